"""
Contact model for the Identity Reconciliation Engine
This module defines the Contact table holding customer email/phone fragments
and the primary/secondary linking used to cluster them.
Contacts are soft deleted only; deleted rows take no part in clustering.
"""

from enum import Enum

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String

from .base import BaseModel


class LinkPrecedence(str, Enum):
    """Position of a contact inside its cluster"""

    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    """
    Contact model representing one identity fragment

    A contact is either 'primary' (the oldest record of its cluster) or
    'secondary' (linked to that primary by id). linked_id is a plain integer
    reference: secondaries always point straight at a primary, never at
    another secondary.

    Database Table: contacts
    """
    __tablename__ = "contacts"

    phone_number = Column(
        String(20),
        nullable=True,
        index=True,
        comment="Customer phone number, digits only"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Customer email address"
    )

    linked_id = Column(
        Integer,
        ForeignKey("contacts.id"),
        nullable=True,
        index=True,
        comment="ID of the primary contact this secondary contact links to"
    )

    link_precedence = Column(
        String(10),
        nullable=False,
        default=LinkPrecedence.PRIMARY.value,
        comment="Either 'primary' or 'secondary'"
    )

    __table_args__ = (
        CheckConstraint(
            link_precedence.in_([p.value for p in LinkPrecedence]),
            name="valid_link_precedence"
        ),
        CheckConstraint(
            "(phone_number IS NOT NULL) OR (email IS NOT NULL)",
            name="contact_info_required"
        ),
        CheckConstraint(
            "(link_precedence = 'primary' AND linked_id IS NULL) OR "
            "(link_precedence = 'secondary' AND linked_id IS NOT NULL)",
            name="secondary_must_have_linked_id"
        ),
        # Matching order is (created_at, id)
        Index("ix_contact_created_id", "created_at", "id"),
        Index("ix_contact_precedence_linked", link_precedence, linked_id),
    )

    def __repr__(self):
        contact_info = []
        if self.email:
            contact_info.append(f"email={self.email}")
        if self.phone_number:
            contact_info.append(f"phone={self.phone_number}")

        return (
            f"<Contact(id={self.id}, "
            f"{', '.join(contact_info)}, "
            f"precedence={self.link_precedence}, linked_id={self.linked_id})>"
        )

    def is_primary(self):
        return self.link_precedence == LinkPrecedence.PRIMARY.value

    def is_secondary(self):
        return self.link_precedence == LinkPrecedence.SECONDARY.value
