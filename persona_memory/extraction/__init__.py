from .descriptions import DescriptionProposal, DescriptionRegenerator
from .scanner import ExtractionScanner, FastScanResult, ScanHit, parse_scan_result
from .updater import (
    DetailApplyResult,
    DetailProposal,
    DetailSkip,
    DetailUpdater,
    build_change_entry,
    is_weak_evidence,
    validate_detail_result,
)

__all__ = [
    "DescriptionProposal",
    "DescriptionRegenerator",
    "DetailApplyResult",
    "DetailProposal",
    "DetailSkip",
    "DetailUpdater",
    "ExtractionScanner",
    "FastScanResult",
    "ScanHit",
    "build_change_entry",
    "is_weak_evidence",
    "parse_scan_result",
    "validate_detail_result",
]
