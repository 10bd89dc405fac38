from .extraction import build_description_prompts, build_detail_prompts, build_scan_prompts, format_conversation

__all__ = [
    "build_description_prompts",
    "build_detail_prompts",
    "build_scan_prompts",
    "format_conversation",
]
