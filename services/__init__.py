"""
Identity clustering engine for the Identity Reconciliation API
Matches fragments to stored contacts, merges clusters, writes the changes
and builds the consolidated identity view.
"""

from .contact_store import ContactStore, SQLAlchemyContactStore
from .exceptions import (
    IdentityReconciliationError,
    MergeConflictError,
    RetryExhaustedError,
    StoreError,
)
from .identity_service import IdentityService, identity_service
from .types import ConsolidatedIdentity, IdentityFragment

__all__ = [
    "ConsolidatedIdentity",
    "ContactStore",
    "IdentityFragment",
    "IdentityReconciliationError",
    "IdentityService",
    "MergeConflictError",
    "RetryExhaustedError",
    "SQLAlchemyContactStore",
    "StoreError",
    "identity_service",
]
