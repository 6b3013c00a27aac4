"""
Identity clustering engine

One request runs four steps in order against a ContactStore:

1. find_matches      - active contacts sharing the email or phone, oldest first
2. plan_merge        - resolve matches to primaries, elect the oldest as the
                       ultimate primary, compute demotions and re-links
3. plan_new_contact  - decide whether the fragment adds a new contact
   write_plan        - apply mutations and creation in one step
4. build_identity    - consolidated view of the final cluster

Steps 2 and 3 compute the whole change set before anything is written, so
a request that loses a concurrency race can simply be run again.
"""

import logging
from typing import Dict, Iterable, List, Optional

from models import LinkPrecedence
from .contact_store import ContactStore
from .types import (
    ConsolidatedIdentity,
    ContactMutation,
    ContactRecord,
    IdentityFragment,
    MergePlan,
    NewContact,
)

logger = logging.getLogger(__name__)


async def find_matches(store: ContactStore, fragment: IdentityFragment) -> List[ContactRecord]:
    """Active contacts sharing the fragment's email or phone, by (created_at, id)"""
    return await store.find_matching(fragment.email, fragment.phone_number)


async def plan_merge(store: ContactStore, matches: List[ContactRecord]) -> MergePlan:
    """
    Fold every cluster implicated by the matches into one.

    Secondaries are followed exactly one hop to their primary. The oldest
    primary wins; every other primary is demoted and its secondaries are
    re-pointed at the winner so no secondary ends up behind another
    secondary. If no match resolves to a live primary, the oldest match is
    promoted in place. Matched secondaries whose primary is missing are
    re-linked to the winner, together with every other live secondary still
    pointing at that missing primary.
    """
    if not matches:
        return MergePlan()

    primaries: Dict[int, ContactRecord] = {}
    orphans: List[ContactRecord] = []
    dangling: List[int] = []
    parents: Dict[int, Optional[ContactRecord]] = {}

    for record in matches:
        if record.is_primary:
            primaries[record.id] = record
            continue

        parent_id = record.linked_id
        if parent_id is not None and parent_id not in parents:
            parents[parent_id] = await store.find_by_id(parent_id)
        parent = parents.get(parent_id) if parent_id is not None else None

        if parent is not None and parent.is_primary:
            primaries[parent.id] = parent
        else:
            orphans.append(record)
            if parent_id is not None and parent_id not in dangling:
                dangling.append(parent_id)

    mutations: Dict[int, ContactMutation] = {}

    if not primaries:
        oldest = min(matches, key=lambda c: c.precedence_key)
        promotion = ContactMutation(id=oldest.id, link_precedence=LinkPrecedence.PRIMARY)
        mutations[oldest.id] = promotion
        primaries[oldest.id] = promotion.apply_to(oldest)
        logger.warning(f"No live primary behind matched contacts; promoting orphan {oldest.id}")

    ultimate = min(primaries.values(), key=lambda c: c.precedence_key)

    def link_to_ultimate(contact_id: int):
        mutations[contact_id] = ContactMutation(
            id=contact_id,
            link_precedence=LinkPrecedence.SECONDARY,
            linked_id=ultimate.id,
        )

    members: Dict[int, ContactRecord] = {ultimate.id: ultimate}
    for member in await store.find_cluster_members(ultimate.id):
        members[member.id] = member

    for primary in primaries.values():
        if primary.id == ultimate.id:
            continue
        logger.info(f"Demoting primary {primary.id} under older primary {ultimate.id}")
        link_to_ultimate(primary.id)
        members[primary.id] = primary
        for secondary in await store.find_cluster_members(primary.id):
            link_to_ultimate(secondary.id)
            members[secondary.id] = secondary

    for orphan in orphans:
        if orphan.id != ultimate.id:
            link_to_ultimate(orphan.id)
            members[orphan.id] = orphan

    for parent_id in dangling:
        if parent_id == ultimate.id:
            continue
        for sibling in await store.find_cluster_members(parent_id):
            if sibling.id != ultimate.id and sibling.id not in mutations:
                link_to_ultimate(sibling.id)
                members[sibling.id] = sibling

    merged = [
        mutations[member.id].apply_to(member) if member.id in mutations else member
        for member in members.values()
    ]
    return MergePlan(
        ultimate=ultimate,
        mutations=list(mutations.values()),
        members=sorted(merged, key=lambda c: c.precedence_key),
    )


def plan_new_contact(fragment: IdentityFragment, plan: MergePlan) -> Optional[NewContact]:
    """
    Decide whether the fragment needs a contact of its own.

    Without an existing cluster the fragment becomes a new primary. Inside a
    cluster it becomes a secondary only when it carries an email or phone the
    cluster has not seen and no member already holds exactly the same
    (email, phone_number) pair.
    """
    if plan.ultimate is None:
        return NewContact(
            email=fragment.email,
            phone_number=fragment.phone_number,
            link_precedence=LinkPrecedence.PRIMARY,
        )

    existing_emails = {m.email for m in plan.members if m.email}
    existing_phones = {m.phone_number for m in plan.members if m.phone_number}

    is_new_email = bool(fragment.email) and fragment.email not in existing_emails
    is_new_phone = bool(fragment.phone_number) and fragment.phone_number not in existing_phones
    if not (is_new_email or is_new_phone):
        return None

    if any(
        m.email == fragment.email and m.phone_number == fragment.phone_number
        for m in plan.members
    ):
        return None

    return NewContact(
        email=fragment.email,
        phone_number=fragment.phone_number,
        linked_id=plan.ultimate.id,
        link_precedence=LinkPrecedence.SECONDARY,
    )


async def write_plan(
    store: ContactStore, plan: MergePlan, new_contact: Optional[NewContact]
) -> Optional[ContactRecord]:
    """Apply the plan's mutations and the optional creation as one unit"""
    if not plan.mutations and new_contact is None:
        return None

    created = await store.apply_atomically(plan.mutations, new_contact)
    if created is not None:
        logger.info(
            f"Created {created.link_precedence.value} contact {created.id}"
            + (f" linked to {created.linked_id}" if created.linked_id else "")
        )
    return created


def _ordered_values(first: Optional[str], others: Iterable[Optional[str]]) -> List[str]:
    rest = sorted({value for value in others if value and value != first})
    return ([first] if first else []) + rest


def build_identity(primary: ContactRecord, members: Iterable[ContactRecord]) -> ConsolidatedIdentity:
    """
    Consolidated view of a cluster: the primary's own email and phone first,
    then the remaining distinct values in ascending order, plus the sorted
    ids of every other member.
    """
    others = [m for m in members if m.id != primary.id]
    return ConsolidatedIdentity(
        primaryContactId=primary.id,
        emails=_ordered_values(primary.email, (m.email for m in others)),
        phoneNumbers=_ordered_values(primary.phone_number, (m.phone_number for m in others)),
        secondaryContactIds=sorted({m.id for m in others}),
    )


async def reconcile(store: ContactStore, fragment: IdentityFragment) -> ConsolidatedIdentity:
    """Run match -> merge -> write -> build for one fragment"""
    matches = await find_matches(store, fragment)
    plan = await plan_merge(store, matches)
    new_contact = plan_new_contact(fragment, plan)
    created = await write_plan(store, plan, new_contact)

    primary_id = plan.ultimate.id if plan.ultimate is not None else created.id
    primary = await store.find_by_id(primary_id)
    members = await store.find_cluster_members(primary_id)
    return build_identity(primary, members)
