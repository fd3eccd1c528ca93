"""
Repository Layer.

Record stores for user accounts: the LDAP directory (primary), the
Supabase table with its local cache (secondary), and the composite that
fails over between them.
"""

from accountdir.repositories.directory_repository import DirectoryRepository
from accountdir.repositories.fallback_repository import FallbackRepository
from accountdir.repositories.record_store import RecordStore
from accountdir.repositories.relational_repository import RelationalRepository

__all__ = [
    "DirectoryRepository",
    "FallbackRepository",
    "RecordStore",
    "RelationalRepository",
]
