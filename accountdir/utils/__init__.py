"""Shared helpers for the AccountDirectory service.

Convenience re-exports so consumers can import directly from
``accountdir.utils`` while full module paths remain supported.
"""

from accountdir.utils.audit import AuditAction, AuditEvent, audit
from accountdir.utils.identifiers import build_dn, generate_uid
from accountdir.utils.record_codec import DecodedMetadata, decode, encode
from accountdir.utils.string_helpers import normalize_keys, to_snake_case

__all__ = [
    "AuditAction",
    "AuditEvent",
    "audit",
    "DecodedMetadata",
    "build_dn",
    "decode",
    "encode",
    "generate_uid",
    "normalize_keys",
    "to_snake_case",
]
