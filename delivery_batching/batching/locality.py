from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

UNKNOWN_LOCALITY = "unknown"

LOCALITY_FIELDS = ("locality", "barangay")
FREE_TEXT_FIELD = "address"

_NULL_LIKE = {"", "null", "none", "unknown", "unknown location"}
_WHITESPACE = re.compile(r"\s+")


def normalize_locality(value: Any) -> str:
    if value is None:
        return UNKNOWN_LOCALITY
    text = _WHITESPACE.sub(" ", str(value)).strip().casefold()
    if text in _NULL_LIKE:
        return UNKNOWN_LOCALITY
    return text


def _match_known(free_text: str, known_localities: Iterable[str]) -> str | None:
    haystack = _WHITESPACE.sub(" ", free_text).casefold()
    for name in known_localities:
        needle = normalize_locality(name)
        if needle == UNKNOWN_LOCALITY:
            continue
        if re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", haystack):
            return needle
    return None


def extract_locality(address: Mapping[str, Any] | None, known_localities: Iterable[str] = ()) -> str:
    """Grouping key for a delivery address. Total and deterministic.

    Structured fields win; otherwise the free-text address line is scanned
    for the first known locality name. Anything else is ``"unknown"``.
    """
    if not address:
        return UNKNOWN_LOCALITY

    for field in LOCALITY_FIELDS:
        key = normalize_locality(address.get(field))
        if key != UNKNOWN_LOCALITY:
            return key

    free_text = address.get(FREE_TEXT_FIELD)
    if isinstance(free_text, str) and free_text.strip():
        matched = _match_known(free_text, known_localities)
        if matched:
            return matched

    return UNKNOWN_LOCALITY
