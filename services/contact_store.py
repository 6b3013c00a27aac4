"""
Contact store used by the identity clustering engine

The engine only talks to the store through the ContactStore protocol.
SQLAlchemyContactStore implements it on top of one AsyncSession, so every
read and write of a request shares the session's transaction; nothing is
committed here.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Contact, utcnow
from .exceptions import StoreError
from .types import ContactMutation, ContactRecord, NewContact

logger = logging.getLogger(__name__)


class ContactStore(Protocol):
    """Narrow record-store interface consumed by the engine"""

    async def find_matching(
        self, email: Optional[str], phone_number: Optional[str]
    ) -> List[ContactRecord]:
        """Active matches ordered by (created_at, id)"""
        ...

    async def find_by_id(self, contact_id: int) -> Optional[ContactRecord]:
        ...

    async def find_cluster_members(self, primary_id: int) -> List[ContactRecord]:
        ...

    async def create_contact(self, new_contact: NewContact) -> ContactRecord:
        ...

    async def apply_atomically(
        self,
        mutations: Sequence[ContactMutation],
        creation: Optional[NewContact] = None,
    ) -> Optional[ContactRecord]:
        ...


class SQLAlchemyContactStore:
    """
    ContactStore backed by the contacts table

    With lock_rows set, every row read is locked FOR UPDATE until the
    session's transaction ends (no-op on SQLite).
    """

    def __init__(self, session: AsyncSession, lock_rows: bool = True):
        self.session = session
        self.lock_rows = lock_rows

    def _active(self):
        query = select(Contact).where(Contact.deleted_at.is_(None))
        if self.lock_rows:
            query = query.with_for_update()
        return query.execution_options(populate_existing=True)

    async def _fetch(self, query) -> List[ContactRecord]:
        result = await self.session.execute(query)
        return [ContactRecord.model_validate(row) for row in result.scalars().all()]

    async def find_matching(
        self, email: Optional[str], phone_number: Optional[str]
    ) -> List[ContactRecord]:
        """
        Find all active contacts whose email or phone number equals the
        given one, oldest first
        """
        conditions = []
        if email:
            conditions.append(Contact.email == email)
        if phone_number:
            conditions.append(Contact.phone_number == phone_number)

        if not conditions:
            return []

        query = self._active().where(or_(*conditions)).order_by(Contact.created_at, Contact.id)
        return await self._fetch(query)

    async def find_by_id(self, contact_id: int) -> Optional[ContactRecord]:
        records = await self._fetch(self._active().where(Contact.id == contact_id))
        return records[0] if records else None

    async def find_cluster_members(self, primary_id: int) -> List[ContactRecord]:
        """All active contacts linked to the given primary, oldest first"""
        query = (
            self._active()
            .where(Contact.linked_id == primary_id)
            .order_by(Contact.created_at, Contact.id)
        )
        return await self._fetch(query)

    async def create_contact(self, new_contact: NewContact) -> ContactRecord:
        now = utcnow()
        contact = Contact(
            email=new_contact.email,
            phone_number=new_contact.phone_number,
            linked_id=new_contact.linked_id,
            link_precedence=new_contact.link_precedence.value,
            created_at=now,
            updated_at=now,
        )
        self.session.add(contact)
        await self.session.flush()  # Get the ID
        return ContactRecord.model_validate(contact)

    async def apply_atomically(
        self,
        mutations: Sequence[ContactMutation],
        creation: Optional[NewContact] = None,
    ) -> Optional[ContactRecord]:
        """
        Stage every link mutation plus the optional new contact and flush
        them together. Nothing is committed: a failure here propagates and
        the caller's transaction rolls all of it back.
        """
        now = utcnow()
        for mutation in mutations:
            contact = await self.session.get(Contact, mutation.id)
            if contact is None or contact.is_deleted():
                raise StoreError(f"Contact {mutation.id} disappeared before it could be updated")

            contact.link_precedence = mutation.link_precedence.value
            contact.linked_id = mutation.linked_id
            contact.updated_at = now

        if mutations:
            await self.session.flush()
            logger.debug(f"Applied {len(mutations)} contact mutation(s)")

        if creation is None:
            return None
        return await self.create_contact(creation)
