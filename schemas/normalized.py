"""
Pydantic schemas for normalized records with validation
"""

import re
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import datetime

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ContactRecord(BaseModel):
    """
    Schema for one contact produced by any feed.

    Ensures:
    - Email is present, trimmed, lower-cased and well-formed
    - Empty strings become None so they never overwrite stored values
    - Phone keeps digits only
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(..., min_length=3, max_length=255)
    external_id: Optional[str] = Field(None, max_length=100)

    full_name: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=50)
    city: Optional[str] = Field(None, max_length=200)
    region: Optional[str] = Field(None, max_length=200)
    specialty: Optional[str] = Field(None, max_length=200)

    source_name: Optional[str] = Field(None, max_length=100)
    last_login_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def clean_email(cls, v: str) -> str:
        """Lower-case and validate the email"""
        v = v.strip().lower()
        if not _EMAIL_PATTERN.match(v):
            raise ValueError(f"Invalid email: {v}")
        return v

    @field_validator(
        "external_id", "full_name", "city", "region", "specialty", "source_name",
        mode="before"
    )
    @classmethod
    def blank_to_none(cls, v):
        """Empty cells carry no information"""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("full_name")
    @classmethod
    def collapse_spaces(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return " ".join(v.split())

    @field_validator("phone", mode="before")
    @classmethod
    def clean_phone(cls, v):
        """Keep digits only"""
        if v is None:
            return None
        digits = re.sub(r"\D", "", str(v))
        return digits or None
