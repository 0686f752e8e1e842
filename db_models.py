import re
from enum import Enum
from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, List


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]{7,15}$")


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: str
    updatedAt: str
    deletedAt: Optional[str] = None

    @property
    def is_primary(self) -> bool:
        return self.linkPrecedence == LinkPrecedence.PRIMARY

    @property
    def sort_key(self):
        """Creation order; id breaks timestamp ties."""
        return (self.createdAt, self.id)


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        if value is not None and not EMAIL_RE.match(value):
            raise ValueError("email must be a valid email address")
        return value

    @field_validator("phoneNumber")
    @classmethod
    def check_phone(cls, value):
        if value is not None and not PHONE_RE.match(value):
            raise ValueError("phoneNumber must be a valid phone number")
        return value

    @model_validator(mode="after")
    def require_email_or_phone(self):
        if not self.email and not self.phoneNumber:
            raise ValueError("Either email or phoneNumber must be provided")
        return self


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]

class FinalResponse(BaseModel):
    contact: ContactResponse


class ContactGroup(BaseModel):
    primaryContact: Contact
    secondaryContacts: List[Contact]
    allEmails: List[str]
    allPhoneNumbers: List[str]


class ErrorDetail(BaseModel):
    message: str
    field: Optional[str] = None

class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    details: Optional[List[ErrorDetail]] = None
