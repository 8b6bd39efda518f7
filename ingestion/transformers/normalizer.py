"""
Transform raw feed units into normalized contact records with Pydantic validation
"""

from typing import Dict, Any, Optional
from datetime import datetime
from pydantic import ValidationError
from schemas.normalized import ContactRecord
from core.exceptions import RecordParseError
from ingestion.results import Accepted, NormalizeResult, Skipped
import logging

logger = logging.getLogger(__name__)

# Formats seen in vendor exports, tried after ISO 8601
_DATETIME_FORMATS = ("%d.%m.%Y %H:%M:%S", "%d.%m.%Y %H:%M", "%d.%m.%Y", "%Y-%m-%d %H:%M:%S")


class ContactNormalizer:
    """
    Normalize contact units from different feeds into one schema.

    Handles:
    - Field name mapping (flat CSV rows and nested API payloads)
    - Full name assembly from name parts
    - Type conversion
    - Validation, reported as Skipped rather than raised
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    def normalize(self, raw_record: Dict[str, Any]) -> NormalizeResult:
        """
        Normalize a raw unit.

        Returns:
            Accepted with the record dict, or Skipped with the reason
        """
        try:
            contact = self._build(raw_record)
        except RecordParseError as e:
            return Skipped(reason=e.message)
        except ValidationError as e:
            return Skipped(reason=self._describe(e))

        # exclude_unset would drop fields that are legitimately None; the
        # merge keeps stored values for None anyway
        return Accepted(record=contact.model_dump())

    def _build(self, raw_record: Dict[str, Any]) -> ContactRecord:
        if not isinstance(raw_record, dict):
            raise RecordParseError(
                "Unit is not a mapping",
                context={"source_name": self.source_name, "unit_type": type(raw_record).__name__}
            )

        # API payloads nest the person under "user"
        record = {**raw_record, **raw_record["user"]} if isinstance(raw_record.get("user"), dict) else raw_record

        email = record.get("email") or record.get("e_mail") or record.get("mail")
        if not email or not str(email).strip():
            raise RecordParseError(
                "Missing email",
                context={"source_name": self.source_name}
            )

        return ContactRecord(
            email=str(email),
            external_id=self._parse_str(record.get("id", record.get("user_id"))),
            full_name=self._full_name(record),
            phone=record.get("phone", record.get("phone_number")),
            city=record.get("city"),
            region=record.get("region"),
            specialty=record.get("specialty", record.get("speciality_name")),
            source_name=self.source_name,
            last_login_at=self._parse_datetime(record.get("last_login", record.get("last_login_at")))
        )

    @staticmethod
    def _full_name(record: Dict[str, Any]) -> Optional[str]:
        if record.get("full_name"):
            return str(record["full_name"])
        parts = [record.get("last_name"), record.get("first_name"), record.get("middle_name")]
        parts = [str(p).strip() for p in parts if p and str(p).strip()]
        return " ".join(parts) if parts else None

    @staticmethod
    def _describe(error: ValidationError) -> str:
        fields = []
        for err in error.errors():
            location = ".".join(str(part) for part in err.get("loc", ()))
            fields.append(f"{location}: {err.get('msg')}")
        return "Validation failed (" + "; ".join(fields) + ")"

    @staticmethod
    def _parse_str(value: Any) -> Optional[str]:
        """Render ids as strings, 10.0 -> "10" """
        if value is None or value == "":
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)

    @staticmethod
    def _parse_datetime(value: Any) -> Optional[datetime]:
        """Safely parse datetime value"""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            # Stored timestamps are naive UTC
            if parsed.tzinfo is not None:
                parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
            return parsed
        except ValueError:
            pass
        for fmt in _DATETIME_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        return None
