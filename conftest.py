"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file database through aiosqlite, so the
suite needs no PostgreSQL server.
"""

import os
from datetime import datetime, timedelta
from typing import List, Optional

# Set before config is imported so the global engine never points at PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./identity_reconciliation_test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from database import DatabaseManager
from models import Contact, LinkPrecedence
from services.identity_service import IdentityService

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


@pytest_asyncio.fixture
async def db(tmp_path):
    """A fresh database with the contacts table created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'contacts.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def service(db) -> IdentityService:
    """Identity service bound to the test database, retrying without delay."""
    return IdentityService(manager=db, retry_base_delay=0)


@pytest_asyncio.fixture
async def async_client(service):
    """HTTP client for the FastAPI app with the test service injected."""
    from main import app, get_identity_service

    app.dependency_overrides[get_identity_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def insert_contact(
    manager: DatabaseManager,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    linked_id: Optional[int] = None,
    precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    minutes: int = 0,
    deleted: bool = False,
) -> int:
    """Seed a contact row directly, created `minutes` after BASE_TIME."""
    created_at = BASE_TIME + timedelta(minutes=minutes)
    async with manager.get_session() as session:
        contact = Contact(
            email=email,
            phone_number=phone_number,
            linked_id=linked_id,
            link_precedence=precedence.value,
            created_at=created_at,
            updated_at=created_at,
            deleted_at=created_at if deleted else None,
        )
        session.add(contact)
        await session.flush()
        return contact.id


async def soft_delete(manager: DatabaseManager, contact_id: int):
    async with manager.get_session() as session:
        contact = await session.get(Contact, contact_id)
        contact.deleted_at = BASE_TIME


async def all_contacts(manager: DatabaseManager) -> List[Contact]:
    async with manager.get_session() as session:
        result = await session.execute(select(Contact).order_by(Contact.id))
        return list(result.scalars().all())


def assert_one_hop(contacts: List[Contact]):
    """Every live secondary points straight at a live primary."""
    by_id = {c.id: c for c in contacts if c.deleted_at is None}
    for contact in by_id.values():
        if contact.is_primary():
            assert contact.linked_id is None
        else:
            parent = by_id.get(contact.linked_id)
            assert parent is not None, f"{contact!r} points at a missing contact"
            assert parent.is_primary(), f"{contact!r} points at secondary {parent!r}"
