# src/gateway/json_parsing.py — v1
"""Robust JSON extraction from model output.

``parse_json_output`` never raises. It tries, in order: direct parse,
markdown fence stripping, balanced-brace extraction, textual repair and
closing of truncated structures. Failures
come back as a ParseResult with a stable error code and the diagnostics
needed to debug the raw output.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

logger = logging.getLogger(__name__)

ParseErrorCode = Literal[
    "EMPTY_RESPONSE", "NO_JSON_FOUND", "PARSE_FAILED", "TRUNCATED_PARSE_FAILED"
]

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_DUPLICATE_COMMAS = re.compile(r",\s*,+")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_MISSING_COMMA_AFTER_VALUE = re.compile(r'(")\s*\n\s*("[\w-]+"\s*:)')
_MISSING_COMMA_AFTER_OBJECT = re.compile(r'}\s*("[\w-]+"\s*:)')
_MISSING_COMMA_BETWEEN_ITEMS = re.compile(r"([}\]])\s*([{\[])")

_CLOSERS = {"{": "}", "[": "]"}


@dataclass
class ParseResult:
    """Outcome of a parse attempt."""

    success: bool
    data: Any = None
    error: str = ""
    error_code: ParseErrorCode | None = None
    raw_output: str = ""
    extracted: str | None = None
    repair_attempted: bool = False
    position: int | None = None

    def diagnostics(self) -> dict[str, Any]:
        """Details payload attached to PARSE_FAILED errors."""
        return {
            "raw_output": self.raw_output,
            "extracted": self.extracted,
            "parse_error": self.error,
            "parse_position": self.position,
            "repair_attempted": self.repair_attempted,
            "total_length": len(self.raw_output),
        }


def _try_load(text: str) -> tuple[Any, json.JSONDecodeError | None]:
    try:
        return json.loads(text), None
    except json.JSONDecodeError as e:
        return None, e


def strip_fences(text: str) -> str:
    """Remove markdown code fences around (or inside) a JSON payload."""
    clean = _FENCE_OPEN.sub("", text.strip())
    clean = _FENCE_CLOSE.sub("", clean)
    return clean.replace("```", "").strip()


def extract_balanced(text: str) -> tuple[str | None, bool]:
    """Return the first top-level JSON object and whether it was closed.

    When the object never closes, everything from the opening brace to the
    end of the text is returned with ``False`` so the caller can repair it.
    """
    start = text.find("{")
    if start == -1:
        return None, False

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1], True
    return text[start:], False


def repair_text(candidate: str) -> str:
    """Fix duplicate, trailing and missing commas."""
    repaired = _DUPLICATE_COMMAS.sub(",", candidate)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)
    repaired = _MISSING_COMMA_AFTER_VALUE.sub(r"\1,\2", repaired)
    repaired = _MISSING_COMMA_AFTER_OBJECT.sub(r"},\1", repaired)
    repaired = _MISSING_COMMA_BETWEEN_ITEMS.sub(r"\1,\2", repaired)
    return repaired


def close_truncated(candidate: str) -> str:
    """Drop the trailing incomplete element and close open structures."""
    stack: list[str] = []
    in_string = False
    escape = False
    last_comma: tuple[int, list[str]] | None = None

    for i, ch in enumerate(candidate):
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]") and stack:
            stack.pop()
        elif ch == "," and stack:
            last_comma = (i, list(stack))

    if not stack and not in_string:
        return candidate

    if last_comma is not None:
        cut, open_at_cut = last_comma
        body = candidate[:cut]
    else:
        body = candidate + ('"' if in_string else "")
        open_at_cut = stack
    return body.rstrip() + "".join(_CLOSERS[c] for c in reversed(open_at_cut))


def parse_json_output(text: str | None, truncated: bool = False) -> ParseResult:
    """Parse a JSON object out of model output. Never raises.

    Args:
        text: Raw model output.
        truncated: The provider reported stopping at its token limit; a
            failure is then reported as TRUNCATED_PARSE_FAILED.
    """
    if not text or not text.strip():
        return ParseResult(
            success=False,
            error="Empty response from model",
            error_code="EMPTY_RESPONSE",
            raw_output=text or "",
        )

    raw = text
    data, _ = _try_load(raw.strip())
    if data is not None:
        return ParseResult(success=True, data=data, raw_output=raw, extracted=raw.strip())

    clean = strip_fences(raw)
    data, _ = _try_load(clean)
    if data is not None:
        return ParseResult(success=True, data=data, raw_output=raw, extracted=clean)

    extracted, closed = extract_balanced(clean)
    if extracted is not None:
        data, first_error = _try_load(extracted)
        if data is not None:
            return ParseResult(success=True, data=data, raw_output=raw, extracted=extracted)

        repaired = repair_text(extracted)
        if not closed:
            repaired = repair_text(close_truncated(repaired))
        data, _ = _try_load(repaired)
        if data is not None:
            logger.info("Recovered JSON after repair (%d chars)", len(repaired))
            return ParseResult(
                success=True,
                data=data,
                raw_output=raw,
                extracted=repaired,
                repair_attempted=True,
            )

        was_truncated = truncated or not closed
        return ParseResult(
            success=False,
            error=f"JSON parse failed: {first_error}",
            error_code="TRUNCATED_PARSE_FAILED" if was_truncated else "PARSE_FAILED",
            raw_output=raw,
            extracted=extracted,
            repair_attempted=True,
            position=first_error.pos if first_error else None,
        )

    return ParseResult(
        success=False,
        error="No JSON object found in response",
        error_code="TRUNCATED_PARSE_FAILED" if truncated else "NO_JSON_FOUND",
        raw_output=raw,
    )
