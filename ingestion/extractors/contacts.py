"""
Contact feeds: the CSV export and the paginated user API, both merged into ``contacts``
"""

from typing import Any, Dict, Optional
from ingestion.extractors.api_extractor import PaginatedAPIFeedSource
from ingestion.extractors.csv_extractor import CSVFeedSource
from ingestion.loaders.upsert_loader import MergePolicy
from ingestion.results import NormalizeResult, SourceUnit
from ingestion.transformers.normalizer import ContactNormalizer
from models.contact import Contact

# source_name and created_at stay with whichever feed inserted the row first
CONTACT_MERGE_POLICY = MergePolicy(
    table=Contact,
    unique_key=("email",),
    mergeable_columns=(
        "external_id",
        "full_name",
        "phone",
        "city",
        "region",
        "specialty",
        "last_login_at",
    ),
)


class ContactCSVFeed(CSVFeedSource):
    """Contacts from a delimited export."""

    def __init__(self, source_name: str, source: str, **kwargs):
        super().__init__(source_name, source, **kwargs)
        self.normalizer = ContactNormalizer(source_name)

    def normalize_row(self, row: Dict[str, Any]) -> NormalizeResult:
        return self.normalizer.normalize(row)

    def merge_policy(self) -> MergePolicy:
        return CONTACT_MERGE_POLICY


class ContactAPIFeed(PaginatedAPIFeedSource):
    """Contacts from the paginated user API, optionally only those updated since a date."""

    def __init__(
        self,
        source_name: str,
        api_url: str,
        updated_after: Optional[str] = None,
        extra_params: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        params = dict(extra_params or {})
        if updated_after:
            params["updated_after"] = updated_after
        super().__init__(source_name, api_url, extra_params=params, **kwargs)
        self.normalizer = ContactNormalizer(source_name)

    def normalize(self, unit: SourceUnit) -> NormalizeResult:
        return self.normalizer.normalize(unit.payload)

    def merge_policy(self) -> MergePolicy:
        return CONTACT_MERGE_POLICY
