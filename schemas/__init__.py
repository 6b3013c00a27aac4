"""
Pydantic schemas for the Identity Reconciliation API
Request/response models and validation for the HTTP endpoints
"""

from .identify import (
    IdentifyRequest,
    ContactResponse,
    IdentifyResponse,
    ErrorResponse
)

__all__ = [
    "IdentifyRequest",
    "ContactResponse",
    "IdentifyResponse",
    "ErrorResponse"
]
