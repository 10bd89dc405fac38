from __future__ import annotations

import json
import re
from typing import Any


_THINK_RE = re.compile(r"<(think|thinking)>.*?</\1>\s*", flags=re.IGNORECASE | re.DOTALL)
_UNCLOSED_THINK_RE = re.compile(r"^\s*<(think|thinking)>.*?(?=[\[{])", flags=re.IGNORECASE | re.DOTALL)
_ISO_DATE_RE = re.compile(r':\s*(\d{4}-\d{2}-\d{2}T[^"}\],\n]+)')
_LEADING_ZERO_RE = re.compile(r":\s*0([1-9][0-9]*)([,\s\]}])")
_TRAILING_COMMA_RE = re.compile(r",(\s*[\]}])")
_DANGLING_KEY_RE = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:\s*$')

_CLOSERS = {"{": "}", "[": "]"}
_DECODER = json.JSONDecoder()


def clean_response_content(text: str) -> str:
    """Drop reasoning wrappers some local models emit before the answer."""
    cleaned = _THINK_RE.sub("", text or "")
    return cleaned.strip()


def strip_json_wrappers(text: str) -> str:
    cleaned = clean_response_content(text)
    cleaned = _UNCLOSED_THINK_RE.sub("", cleaned).strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    if cleaned and cleaned[0] not in "{[":
        starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i >= 0]
        if starts:
            cleaned = cleaned[min(starts) :]
    return cleaned.strip()


def _strip_line_comments(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if ch == "/" and text.startswith("//", i):
            newline = text.find("\n", i)
            if newline < 0:
                break
            i = newline
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def repair_json_text(text: str) -> str:
    """Fix the textual mistakes models commonly make without touching structure."""
    repaired = _strip_line_comments(text)
    repaired = repaired.replace("\\'", "'")
    repaired = _ISO_DATE_RE.sub(lambda m: f': "{m.group(1).strip()}"', repaired)
    repaired = _LEADING_ZERO_RE.sub(r": 0.\1\2", repaired)
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    return repaired


def balance_json(text: str) -> str:
    """Close an unterminated string and any open arrays or objects."""
    out: list[str] = []
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                continue
            stack.pop()
        out.append(ch)

    if in_string:
        if escaped:
            out.pop()
        out.append('"')
    balanced = "".join(out).rstrip()
    balanced = _DANGLING_KEY_RE.sub("", balanced).rstrip().rstrip(",").rstrip()
    balanced += "".join(reversed(stack))
    return _TRAILING_COMMA_RE.sub(r"\1", balanced)


def _try_load(text: str) -> Any | None:
    if not text:
        return None
    try:
        # raw_decode tolerates prose after a complete document
        parsed, _ = _DECODER.raw_decode(text)
    except json.JSONDecodeError:
        return None
    return parsed


def parse_json_response(text: str) -> Any | None:
    """Parse model output as JSON, repairing it in stages. Returns None when nothing parses."""
    cleaned = strip_json_wrappers(text)
    parsed = _try_load(cleaned)
    if parsed is not None:
        return parsed
    repaired = repair_json_text(cleaned)
    parsed = _try_load(repaired)
    if parsed is not None:
        return parsed
    return _try_load(balance_json(repaired))
