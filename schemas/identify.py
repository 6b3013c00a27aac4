"""
Pydantic schemas for the /identify endpoint
Handles request validation and response serialization
"null" strings and blank values are treated as absent fields
"""

from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError
from email_validator import validate_email as check_email_syntax
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _blank_to_none(v):
    if isinstance(v, str) and v.strip().lower() in ('null', ''):
        return None
    return v


class IdentifyRequest(BaseModel):
    """
    Request schema for the /identify endpoint
    Validates that at least one of email or phoneNumber is provided
    """
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"email": "lorraine@hillvalley.edu", "phoneNumber": "123456"},
                {"email": "mcfly@hillvalley.edu", "phoneNumber": None},
                {"email": None, "phoneNumber": "123456"},
            ]
        },
    )

    email: Optional[str] = Field(
        None,
        description="Customer email address",
        examples=["customer@example.com", None]
    )
    phoneNumber: Optional[str] = Field(
        None,
        description="Customer phone number, digits only",
        examples=["123456", None]
    )

    @field_validator('email', mode='before')
    @classmethod
    def validate_email(cls, v) -> Optional[str]:
        """
        Trim and syntax-check the email
        The submitted spelling is kept as-is; matching is exact
        """
        v = _blank_to_none(v)
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError('Email must be a string')

        v = v.strip()
        try:
            check_email_syntax(v, check_deliverability=False)
        except EmailNotValidError as e:
            raise ValueError(f'Invalid email format: {e}')
        return v

    @field_validator('phoneNumber', mode='before')
    @classmethod
    def validate_phone_number(cls, v) -> Optional[str]:
        """
        Accept a string or an integer made of digits only
        """
        v = _blank_to_none(v)
        if v is None:
            return None

        if isinstance(v, bool) or not isinstance(v, (str, int)):
            raise ValueError('Phone number must be a string or number')

        v = str(v).strip()
        if not (v.isascii() and v.isdigit()):
            raise ValueError('Phone number must contain digits only')
        return v

    @model_validator(mode='after')
    def validate_at_least_one_field(self):
        """Ensure at least one of email or phoneNumber is provided"""
        if not self.email and not self.phoneNumber:
            raise ValueError('Either email or phoneNumber must be provided')
        return self


class ContactResponse(BaseModel):
    """
    Consolidated contact information for one customer
    """
    primaryContactId: int = Field(
        description="ID of the primary contact"
    )
    emails: List[str] = Field(
        description="All email addresses of the customer, the primary's first",
        examples=[["lorraine@hillvalley.edu", "mcfly@hillvalley.edu"]]
    )
    phoneNumbers: List[str] = Field(
        description="All phone numbers of the customer, the primary's first",
        examples=[["123456"]]
    )
    secondaryContactIds: List[int] = Field(
        description="IDs of all secondary contacts linked to the primary",
        examples=[[23]]
    )


class IdentifyResponse(BaseModel):
    """
    Response schema for the /identify endpoint
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "contact": {
                    "primaryContactId": 1,
                    "emails": ["lorraine@hillvalley.edu", "mcfly@hillvalley.edu"],
                    "phoneNumbers": ["123456"],
                    "secondaryContactIds": [23]
                }
            }
        }
    )

    contact: ContactResponse = Field(
        description="Consolidated contact information"
    )


class ErrorResponse(BaseModel):
    """
    Error response schema for API errors
    """
    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "error": "ValidationError",
                    "message": "Either email or phoneNumber must be provided",
                    "details": {"errors": [{"field": "body", "message": "...", "type": "value_error"}]}
                },
                {
                    "error": "StoreError",
                    "message": "Contact store is currently unavailable"
                }
            ]
        }
    )

    error: str = Field(
        description="Error type or category"
    )
    message: str = Field(
        description="Human-readable error message"
    )
    details: Optional[Dict[str, Any]] = Field(
        None,
        description="Additional error details"
    )
