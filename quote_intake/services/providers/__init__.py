"""Provider search (registry + directory) and RFQ outreach."""

from .directory import PlacesDirectory, ProviderDirectory, build_search_query, pick_contact_email
from .sourcing import ProviderSearchResult, ProviderSourcingService, candidate_key, select_for_outreach

__all__ = [
    "PlacesDirectory",
    "ProviderDirectory",
    "ProviderSearchResult",
    "ProviderSourcingService",
    "build_search_query",
    "candidate_key",
    "pick_contact_email",
    "select_for_outreach",
]
