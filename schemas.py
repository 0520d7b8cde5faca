import re
from typing import List, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, field_validator, model_validator

PHONE_PATTERN = re.compile(r"^[0-9]{4,15}$")


def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, value):
        value = _blank_to_none(value)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("Email must be valid.")
        # validate only; emails are case-sensitive, so the input is stored as given
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError:
            raise ValueError("Email must be valid.") from None
        return value

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def _check_phone(cls, value):
        # clients often send the number as a JSON integer
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        value = _blank_to_none(value)
        if value is None:
            return None
        if not isinstance(value, str) or not PHONE_PATTERN.fullmatch(value):
            raise ValueError("Phone number must be 4-15 digits long, digits only.")
        return value

    @model_validator(mode="after")
    def _require_one(self):
        if not self.email and not self.phoneNumber:
            raise ValueError("Provide at least one of email or phoneNumber.")
        return self


class ConsolidatedContact(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class IdentifyResponse(BaseModel):
    contact: ConsolidatedContact


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
