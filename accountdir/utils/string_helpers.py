"""
String Helpers.

Key normalisation for event-bus payloads (producers write camelCase) and
search-term cleaning for PostgREST ``ilike`` filters.
"""

from __future__ import annotations

import re

from pydantic import JsonValue

__all__ = [
    "normalize_keys",
    "sanitize_postgrest_value",
    "to_snake_case",
]

# Word boundaries inside a camelCase key: "messageId", "HTTPServer".
_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

# Commas and parentheses are PostgREST ``or`` syntax, "%" and "_" are
# wildcards.  Keep letters (accented Latin included), digits, whitespace,
# and the characters found in emails.
_POSTGREST_UNSAFE = re.compile(r"[^0-9A-Za-zÀ-ɏ\s@.\-]")


def to_snake_case(key: str) -> str:
    """``nationalityOrOrigin`` -> ``nationality_or_origin``; snake_case passes through."""
    return re.sub(r"_{2,}", "_", _WORD_BOUNDARY.sub("_", key)).lower()


def normalize_keys(data: JsonValue) -> JsonValue:
    """Snake-case every mapping key in *data*, however deeply nested."""
    if isinstance(data, dict):
        return {to_snake_case(key): normalize_keys(value) for key, value in data.items()}
    if isinstance(data, list):
        return [normalize_keys(item) for item in data]
    return data


def sanitize_postgrest_value(value: str) -> str:
    """Drop every character that could change the meaning of a filter expression."""
    return _POSTGREST_UNSAFE.sub("", value)
