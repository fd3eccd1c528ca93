"""
Directory identifier helpers.

``generate_uid`` derives the RDN value for an account and ``build_dn``
places it under the users OU.  Both are pure apart from the clock used by
the last-resort uid branch, which is injectable for tests.
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional

from ldap3.utils.dn import escape_rdn

__all__ = ["build_dn", "generate_uid"]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

UID_MAX_LEN: int = 15
UID_MIN_LEN: int = 3
ID_PREFIX_LEN: int = 8


def generate_uid(
    email: str,
    record_id: str,
    clock: Optional[Callable[[], float]] = None,
) -> str:
    """Derive a directory uid from an email address and a record id.

    Rules, in order:

    1. Lower-case the local part, keep only ``[a-z0-9]``, cap at 15.
    2. If that is shorter than 3 characters, use the first 8
       alphanumeric characters of the record id (lower-cased).
    3. If that is empty too, use ``"user"`` plus the last 6 digits of the
       current epoch-millisecond timestamp.

    >>> generate_uid("panchi@gmail.com", "x")
    'panchi'
    >>> generate_uid("a.b+test@example.com", "x")
    'abtest'
    """
    local_part = email.split("@", 1)[0].lower()
    uid = _NON_ALNUM_RE.sub("", local_part)[:UID_MAX_LEN]
    if len(uid) >= UID_MIN_LEN:
        return uid

    uid = _NON_ALNUM_RE.sub("", (record_id or "").lower())[:ID_PREFIX_LEN]
    if uid:
        return uid

    now_ms = int((clock or time.time)() * 1000)
    return f"user{str(now_ms)[-6:]}"


def build_dn(uid: str, users_ou: str) -> str:
    """Return ``uid=<uid>,<users_ou>`` with the RDN value escaped."""
    return f"uid={escape_rdn(uid)},{users_ou}"
