"""
Identity Service - entry point of the identity clustering engine
Runs one reconciliation per transaction, classifies database failures and
re-runs requests that lost a race against a concurrent merge
"""

import logging
from typing import Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from config import settings
from database import DatabaseManager, db_manager
from schemas.identify import ContactResponse, IdentifyRequest, IdentifyResponse
from .contact_store import SQLAlchemyContactStore
from .exceptions import MergeConflictError, StoreError
from .reconciliation import reconcile
from .retry import exponential_backoff, is_conflict_error
from .types import ConsolidatedIdentity, IdentityFragment

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Core service for identity reconciliation

    Every call to identify() reads, merges and writes inside a single
    transaction with the candidate rows locked. A serialization failure or
    deadlock raises MergeConflictError, which re-runs the whole request with
    exponential backoff up to max_retries times before surfacing as a
    StoreError.
    """

    def __init__(
        self,
        manager: Optional[DatabaseManager] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        lock_rows: Optional[bool] = None,
    ):
        self.db_manager = manager or db_manager
        self.max_retries = settings.IDENTIFY_MAX_RETRIES if max_retries is None else max_retries
        self.lock_rows = settings.DB_LOCK_ROWS if lock_rows is None else lock_rows

        self._identify_with_retry = exponential_backoff(
            max_retries=self.max_retries,
            base_delay=settings.IDENTIFY_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay,
            max_delay=settings.IDENTIFY_RETRY_MAX_DELAY,
            exceptions=(MergeConflictError,),
            on_retry=self._log_retry,
        )(self._reconcile_once)

    @staticmethod
    def _log_retry(attempt: int, exc: Exception, delay: float):
        logger.warning(f"Concurrent merge conflict, retry {attempt} in {delay:.2f}s: {exc}")

    async def identify(
        self, email: Optional[str] = None, phone_number: Optional[str] = None
    ) -> ConsolidatedIdentity:
        """
        Consolidate the fragment into its cluster and return the cluster view

        The caller guarantees at least one of email/phone_number is present.
        """
        fragment = IdentityFragment(email=email or None, phone_number=phone_number or None)
        return await self._identify_with_retry(fragment)

    async def identify_contact(self, request: IdentifyRequest) -> IdentifyResponse:
        """Adapter from the /identify request schema to the response schema"""
        identity = await self.identify(request.email, request.phoneNumber)
        return IdentifyResponse(contact=ContactResponse(**identity.model_dump()))

    async def _reconcile_once(self, fragment: IdentityFragment) -> ConsolidatedIdentity:
        try:
            async with self.db_manager.get_session() as session:
                store = SQLAlchemyContactStore(session, lock_rows=self.lock_rows)
                return await reconcile(store, fragment)
        except DBAPIError as e:
            if is_conflict_error(e):
                raise MergeConflictError(f"Conflicting concurrent merge: {e.orig}") from e
            raise StoreError(f"Contact store failure: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Contact store failure: {e}") from e
        except OSError as e:
            raise StoreError(f"Contact store unavailable: {e}") from e


# Global service instance
identity_service = IdentityService()
