"""
Unit tests for contact normalization
"""

import pytest
from datetime import datetime
from ingestion.results import Accepted, Skipped
from ingestion.transformers.normalizer import ContactNormalizer
from schemas.normalized import ContactRecord


@pytest.fixture
def normalizer():
    return ContactNormalizer(source_name="contacts_csv")


class TestContactNormalizer:
    """Test mapping raw units into contact records"""

    def test_csv_row(self, normalizer):
        result = normalizer.normalize({
            "email": "  Anna@Example.COM ",
            "full_name": "  Anna   Ivanova ",
            "phone": "+7 (900) 111-22-33",
            "city": "Kazan",
            "region": "",
            "specialty": "Cardiology",
            "last_login": "15.01.2024 10:00:00",
        })

        assert isinstance(result, Accepted)
        record = result.record
        assert record["email"] == "anna@example.com"
        assert record["full_name"] == "Anna Ivanova"
        assert record["phone"] == "79001112233"
        assert record["region"] is None
        assert record["source_name"] == "contacts_csv"
        assert record["last_login_at"] == datetime(2024, 1, 15, 10, 0, 0)

    def test_nested_api_payload(self, normalizer):
        result = normalizer.normalize({
            "user": {
                "id": 42,
                "email": "gleb@example.com",
                "first_name": "Gleb",
                "last_name": "Orlov",
                "middle_name": "Ilyich",
            },
            "speciality_name": "Surgery",
            "last_login": "2024-02-01T12:00:00+03:00",
        })

        assert isinstance(result, Accepted)
        record = result.record
        assert record["external_id"] == "42"
        assert record["full_name"] == "Orlov Gleb Ilyich"
        assert record["specialty"] == "Surgery"
        # Stored as naive UTC
        assert record["last_login_at"] == datetime(2024, 2, 1, 9, 0, 0)

    def test_missing_fields_are_none_not_empty(self, normalizer):
        result = normalizer.normalize({"email": "boris@example.com", "phone": "", "city": None})

        assert isinstance(result, Accepted)
        assert result.record["phone"] is None
        assert result.record["city"] is None
        assert result.record["full_name"] is None

    def test_missing_email_is_skipped(self, normalizer):
        result = normalizer.normalize({"full_name": "No Email", "phone": "123"})

        assert isinstance(result, Skipped)
        assert "Missing email" in result.reason

    def test_invalid_email_is_skipped(self, normalizer):
        result = normalizer.normalize({"email": "not-an-email"})

        assert isinstance(result, Skipped)
        assert "email" in result.reason

    def test_non_mapping_unit_is_skipped(self, normalizer):
        result = normalizer.normalize(["a", "b"])

        assert isinstance(result, Skipped)

    def test_unparseable_date_becomes_none(self, normalizer):
        result = normalizer.normalize({"email": "vera@example.com", "last_login": "yesterday"})

        assert isinstance(result, Accepted)
        assert result.record["last_login_at"] is None

    def test_float_ids_are_rendered_as_integers(self, normalizer):
        result = normalizer.normalize({"email": "vera@example.com", "id": 10.0})

        assert result.record["external_id"] == "10"


class TestContactRecord:

    def test_email_is_lower_cased(self):
        assert ContactRecord(email="A@B.IO").email == "a@b.io"

    def test_phone_keeps_digits(self):
        assert ContactRecord(email="a@b.io", phone="8 (900) 000-11-22").phone == "89000001122"

    def test_blank_phone_is_none(self):
        assert ContactRecord(email="a@b.io", phone=" - ").phone is None
