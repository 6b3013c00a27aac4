"""
Value types for the identity clustering engine

Contacts are handled as immutable records keyed by integer id; linked_id is
a plain id reference into that set, never an object pointer.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import LinkPrecedence


class IdentityFragment(BaseModel):
    """The email/phone pair submitted by one request"""
    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    phone_number: Optional[str] = None


class ContactRecord(BaseModel):
    """Snapshot of one stored contact row"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    linked_id: Optional[int] = None
    link_precedence: LinkPrecedence
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_primary(self) -> bool:
        return self.link_precedence == LinkPrecedence.PRIMARY

    @property
    def precedence_key(self):
        """Sort key deciding which contact is older: (created_at, id)"""
        return (self.created_at, self.id)


class ContactMutation(BaseModel):
    """Link change for one existing contact (promotion, demotion or re-link)"""
    model_config = ConfigDict(frozen=True)

    id: int
    link_precedence: LinkPrecedence
    linked_id: Optional[int] = None

    def apply_to(self, record: ContactRecord) -> ContactRecord:
        return record.model_copy(
            update={"link_precedence": self.link_precedence, "linked_id": self.linked_id}
        )


class NewContact(BaseModel):
    """Creation payload for a contact the writer has decided to add"""
    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    phone_number: Optional[str] = None
    linked_id: Optional[int] = None
    link_precedence: LinkPrecedence


class MergePlan(BaseModel):
    """
    Outcome of the cluster merger: the ultimate primary, every mutation needed
    to fold the implicated clusters into it, and the merged membership as it
    will look once those mutations are applied (ultimate primary included).
    An empty match set gives a plan without an ultimate primary.
    """
    model_config = ConfigDict(frozen=True)

    ultimate: Optional[ContactRecord] = None
    mutations: List[ContactMutation] = Field(default_factory=list)
    members: List[ContactRecord] = Field(default_factory=list)


class ConsolidatedIdentity(BaseModel):
    """Consolidated view of one cluster"""
    model_config = ConfigDict(frozen=True)

    primaryContactId: int
    emails: List[str] = Field(default_factory=list)
    phoneNumbers: List[str] = Field(default_factory=list)
    secondaryContactIds: List[int] = Field(default_factory=list)
