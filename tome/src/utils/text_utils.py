"""
Tome - Text Utilities
======================
Stateless helpers for normalising user input and pulling structured
data out of free-text model replies.

``parse_json_object`` is a fallible parser: it never raises on bad model
output and instead returns a ``ParseResult`` carrying either the decoded
object or a ``ParseFailure``.
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass

from tome.src.core.errors import ParseFailure

JsonObject = dict[str, object]

# ``json`` fenced block first, then any brace-delimited span
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_BARE_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufeff\u200b\u200c\u200d]")


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Either ``value`` (success) or ``error`` (failure), never both."""

    value: JsonObject | None = None
    error: ParseFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


def normalize_text(text: str) -> str:
    """NFC-normalise, drop control / zero-width characters and collapse whitespace."""
    text = unicodedata.normalize("NFC", text or "")
    text = _CONTROL_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def parse_json_object(raw: str) -> ParseResult:
    """
    Locate and decode a JSON object inside a model reply.

    Accepts a fenced ```json block or a bare ``{...}`` located anywhere in
    the text.  Anything that is not a JSON *object* is a failure.
    """
    if not raw or not raw.strip():
        return ParseResult(error=ParseFailure("empty reply"))

    candidates: list[str] = [m.group(1) for m in _FENCED_JSON_RE.finditer(raw)]
    bare = _BARE_OBJECT_RE.search(raw)
    if bare:
        candidates.append(bare.group(0))

    if not candidates:
        return ParseResult(error=ParseFailure("no JSON object found in reply"))

    last_error = "undecodable JSON"
    for candidate in candidates:
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = f"undecodable JSON: {exc.msg}"
            continue
        if isinstance(decoded, dict):
            return ParseResult(value=decoded)
        last_error = f"expected a JSON object, got {type(decoded).__name__}"

    return ParseResult(error=ParseFailure(last_error))


def string_list(value: object) -> list[str]:
    """Coerce a decoded JSON value to a list of non-empty, stripped strings."""
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]
