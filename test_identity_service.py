"""
End-to-end tests for IdentityService.identify on a SQLite database.
"""

import asyncio
import importlib

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from conftest import all_contacts, assert_one_hop, insert_contact, soft_delete
from models import LinkPrecedence
from services.exceptions import RetryExhaustedError, StoreError
from services.identity_service import IdentityService

identity_module = importlib.import_module("services.identity_service")

pytestmark = pytest.mark.asyncio

SECONDARY = LinkPrecedence.SECONDARY


class SerializationFailure(Exception):
    sqlstate = "40001"


def conflict_error():
    return DBAPIError("UPDATE contacts", {}, SerializationFailure("could not serialize access"))


class TestScenarios:

    async def test_new_email_creates_primary(self, service, db):
        identity = await service.identify(email="a@x.com")

        assert identity.model_dump() == {
            "primaryContactId": 1,
            "emails": ["a@x.com"],
            "phoneNumbers": [],
            "secondaryContactIds": [],
        }
        contacts = await all_contacts(db)
        assert len(contacts) == 1 and contacts[0].is_primary()

    async def test_new_phone_for_known_email_creates_secondary(self, service, db):
        await service.identify(email="a@x.com")
        identity = await service.identify(email="a@x.com", phone_number="111")

        assert identity.model_dump() == {
            "primaryContactId": 1,
            "emails": ["a@x.com"],
            "phoneNumbers": ["111"],
            "secondaryContactIds": [2],
        }
        secondary = (await all_contacts(db))[1]
        assert secondary.is_secondary() and secondary.linked_id == 1

    async def test_two_primaries_merge_under_the_older(self, service, db):
        await service.identify(email="a@x.com")
        await service.identify(email="a@x.com", phone_number="111")
        await service.identify(email="b@x.com", phone_number="222")

        identity = await service.identify(email="b@x.com", phone_number="111")

        assert identity.primaryContactId == 1
        assert identity.emails == ["a@x.com", "b@x.com"]
        assert identity.phoneNumbers == ["111", "222"]
        assert identity.secondaryContactIds == [2, 3]
        demoted = (await all_contacts(db))[2]
        assert demoted.is_secondary() and demoted.linked_id == 1

    async def test_phone_only_primary_demoted_when_linked(self, service, db):
        await service.identify(email="a@x.com")
        await service.identify(phone_number="111")

        identity = await service.identify(email="a@x.com", phone_number="111")

        assert identity.primaryContactId == 1
        assert identity.emails == ["a@x.com"]
        assert identity.phoneNumbers == ["111"]
        assert identity.secondaryContactIds == [2]
        assert len(await all_contacts(db)) == 2


class TestProperties:

    async def test_exact_repeat_is_idempotent(self, service, db):
        await service.identify(email="a@x.com")
        await service.identify(email="a@x.com", phone_number="111")

        first = await service.identify(email="a@x.com", phone_number="111")
        second = await service.identify(email="a@x.com", phone_number="111")

        assert first == second
        assert len(await all_contacts(db)) == 2

    async def test_member_pair_creates_nothing_even_if_cluster_differs(self, service, db):
        await service.identify(email="a@x.com", phone_number="111")
        await service.identify(email="b@x.com", phone_number="111")
        await service.identify(email="a@x.com", phone_number="222")

        identity = await service.identify(email="b@x.com", phone_number="111")

        assert len(await all_contacts(db)) == 3
        assert identity.secondaryContactIds == [2, 3]

    async def test_partial_fragments_of_known_values_create_nothing(self, service, db):
        await service.identify(email="a@x.com", phone_number="111")

        await service.identify(email="a@x.com")
        identity = await service.identify(phone_number="111")

        assert identity.secondaryContactIds == []
        assert len(await all_contacts(db)) == 1

    async def test_oldest_wins_regardless_of_request_order(self, db, service):
        newer = await insert_contact(db, email="a@x.com", minutes=30)
        older = await insert_contact(db, phone_number="111", minutes=10)

        identity = await service.identify(email="a@x.com", phone_number="111")

        assert identity.primaryContactId == older
        assert identity.secondaryContactIds == [newer]
        assert identity.emails == ["a@x.com"]
        assert identity.phoneNumbers == ["111"]

    async def test_merge_of_merged_clusters_keeps_one_hop(self, service, db):
        fragments = [
            ("a@x.com", None),
            (None, "111"),
            ("a@x.com", "222"),
            ("b@x.com", "111"),
            ("c@x.com", "333"),
            ("d@x.com", "333"),
            ("d@x.com", "222"),
            ("b@x.com", "222"),
            ("b@x.com", "444"),
        ]
        for email, phone in fragments:
            identity = await service.identify(email=email, phone_number=phone)

        contacts = await all_contacts(db)
        assert_one_hop(contacts)
        assert [c.id for c in contacts if c.is_primary()] == [1]
        assert identity.primaryContactId == 1
        assert identity.emails == ["a@x.com", "b@x.com", "c@x.com", "d@x.com"]
        assert identity.phoneNumbers == ["111", "222", "333", "444"]
        assert identity.secondaryContactIds == list(range(2, len(contacts) + 1))
        for values in (identity.emails, identity.phoneNumbers, identity.secondaryContactIds):
            assert len(values) == len(set(values))


class TestSoftDeleteAndOrphans:

    async def test_deleted_contact_is_not_matched(self, service, db):
        deleted = await insert_contact(db, email="a@x.com", deleted=True)

        identity = await service.identify(email="a@x.com")

        assert identity.primaryContactId != deleted
        assert identity.secondaryContactIds == []

    async def test_orphan_promoted_to_primary(self, service, db):
        gone = await insert_contact(db, email="gone@x.com")
        orphan = await insert_contact(db, email="a@x.com", linked_id=gone, precedence=SECONDARY, minutes=1)
        await soft_delete(db, gone)

        identity = await service.identify(email="a@x.com", phone_number="111")

        assert identity.primaryContactId == orphan
        assert identity.phoneNumbers == ["111"]
        contacts = await all_contacts(db)
        assert_one_hop(contacts)
        promoted = next(c for c in contacts if c.id == orphan)
        assert promoted.is_primary() and promoted.linked_id is None

    async def test_unmatched_secondaries_of_deleted_primary_follow_the_orphan(self, service, db):
        gone = await insert_contact(db, email="gone@x.com")
        orphan = await insert_contact(db, email="a@x.com", linked_id=gone, precedence=SECONDARY, minutes=1)
        unmatched = await insert_contact(db, phone_number="999", linked_id=gone, precedence=SECONDARY, minutes=2)
        await soft_delete(db, gone)

        identity = await service.identify(email="a@x.com")

        assert identity.primaryContactId == orphan
        assert identity.secondaryContactIds == [unmatched]
        assert identity.phoneNumbers == ["999"]
        contacts = await all_contacts(db)
        assert_one_hop(contacts)
        assert next(c for c in contacts if c.id == unmatched).linked_id == orphan


class TestConcurrencyContract:

    async def test_concurrent_identical_fragments_create_one_contact(self, service, db):
        first, second = await asyncio.gather(
            service.identify(email="a@x.com"),
            service.identify(email="a@x.com"),
        )

        contacts = await all_contacts(db)
        assert len(contacts) == 1
        assert first == second
        assert first.primaryContactId == contacts[0].id

    async def test_concurrent_crossing_merges_leave_one_primary(self, service, db):
        a = await insert_contact(db, email="a@x.com", phone_number="111")
        await insert_contact(db, email="b@x.com", phone_number="222", minutes=5)

        identities = await asyncio.gather(
            service.identify(email="a@x.com", phone_number="222"),
            service.identify(email="b@x.com", phone_number="111"),
        )

        contacts = await all_contacts(db)
        assert_one_hop(contacts)
        assert [c.id for c in contacts if c.is_primary()] == [a]
        assert [identity.primaryContactId for identity in identities] == [a, a]

    async def test_concurrent_new_phones_join_one_cluster(self, service, db):
        phones = ["111", "222", "333", "444"]

        await asyncio.gather(*(service.identify(email="a@x.com", phone_number=p) for p in phones))

        contacts = await all_contacts(db)
        assert_one_hop(contacts)
        assert len(contacts) == len(phones)
        assert len([c for c in contacts if c.is_primary()]) == 1
        assert sorted(c.phone_number for c in contacts) == phones

    async def test_conflict_is_retried_from_scratch(self, service, db, monkeypatch):
        real_reconcile = identity_module.reconcile
        calls = []

        async def flaky_reconcile(store, fragment):
            calls.append(fragment)
            if len(calls) == 1:
                await real_reconcile(store, fragment)
                raise conflict_error()
            return await real_reconcile(store, fragment)

        monkeypatch.setattr(identity_module, "reconcile", flaky_reconcile)

        identity = await service.identify(email="a@x.com")

        assert len(calls) == 2
        assert identity.primaryContactId == 1
        assert len(await all_contacts(db)) == 1

    async def test_retries_exhausted_surface_as_store_error(self, db, monkeypatch):
        service = IdentityService(manager=db, max_retries=2, retry_base_delay=0)
        calls = []

        async def always_conflicts(store, fragment):
            calls.append(fragment)
            raise conflict_error()

        monkeypatch.setattr(identity_module, "reconcile", always_conflicts)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await service.identify(email="a@x.com")

        assert isinstance(exc_info.value, StoreError)
        assert len(calls) == 3

    async def test_other_database_errors_are_not_retried(self, service, monkeypatch):
        calls = []

        async def broken(store, fragment):
            calls.append(fragment)
            raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

        monkeypatch.setattr(identity_module, "reconcile", broken)

        with pytest.raises(StoreError) as exc_info:
            await service.identify(email="a@x.com")

        assert not isinstance(exc_info.value, RetryExhaustedError)
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert len(calls) == 1

    async def test_identify_contact_wraps_consolidated_identity(self, service):
        from schemas import IdentifyRequest

        response = await service.identify_contact(IdentifyRequest(email="a@x.com", phoneNumber="111"))

        assert response.contact.primaryContactId == 1
        assert response.contact.emails == ["a@x.com"]
        assert response.contact.phoneNumbers == ["111"]
