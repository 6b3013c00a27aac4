"""
Database models package for the Identity Reconciliation Engine
Contains SQLAlchemy models for contact fragments and their cluster links
"""

from .base import Base, BaseModel, utcnow
from .contact import Contact, LinkPrecedence

__all__ = ['Base', 'BaseModel', 'Contact', 'LinkPrecedence', 'utcnow']
