# --------------------------- quote_intake/services/providers/directory.py ----------------------------
"""
Quote Intake · Provider Directory Search

OVERVIEW:
External place search used when the local provider registry is thin.
Finds workshops offering a service around a location and resolves their
contact channels.

WORKFLOW:
1. Composite query: service + material + industrial workshop terms + location
2. Geocode the location (fixed fallback coordinate when geocoding fails)
3. Radius-bounded Text Search
4. Place Details per candidate to backfill phone and website
5. Best-effort scrape of each website for a contact email
6. Drop candidates outside the radius (geodesic distance)

TECHNICAL ARCHITECTURE:
- Geocoding: geopy Nominatim, cached in a TTLCache
- Places: Google Places Text Search / Place Details REST endpoints via requests
- Every network call goes through a rate limiter: geocode priority 8, text
  search priority 7, details priority 6 on the ``directory`` tier, website
  fetches on the ``web`` tier
- Blocking clients run in worker threads (asyncio.to_thread)

DEPENDENCIES:
- Environment variables: GOOGLE_PLACES_API_KEY, NOMINATIM_USER_AGENT
"""

import asyncio
import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

import requests
from dotenv import load_dotenv
from geopy.distance import geodesic
from geopy.geocoders import Nominatim

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.models import ProviderCandidate, ProviderSource
from quote_intake.services.cache import TTLCache
from quote_intake.services.rate_limiter import RateLimiter

load_dotenv()

logger = logging.getLogger(__name__)

TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
DETAILS_FIELDS = "name,formatted_address,formatted_phone_number,international_phone_number,website,rating"
REQUEST_TIMEOUT = 10
EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

Coordinate = Tuple[float, float]


def build_search_query(service: str, material: Optional[str] = None, location: Optional[str] = None) -> str:
    parts = [service.replace("_", " ")]
    if material:
        parts.append(material)
    parts.extend(settings.DIRECTORY_QUERY_TERMS)
    if location:
        parts.append(location)
    return " ".join(parts)


def pick_contact_email(html: str) -> Optional[str]:
    """First address on a page that is not generic, tracking or free-mail."""
    for match in EMAIL_PATTERN.findall(html or ""):
        address = match.lower()
        domain = address.rsplit("@", 1)[-1]
        if domain in settings.FREE_MAIL_DOMAINS:
            continue
        if any(fragment in address for fragment in settings.SCRAPE_IGNORED_FRAGMENTS):
            continue
        if address.endswith((".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")):
            continue
        return address
    return None


class ProviderDirectory:
    """Directory-search/geocode collaborator."""

    async def search(self, service: str, material: Optional[str] = None,
                     location: Optional[str] = None, radius_km: Optional[float] = None) -> List[ProviderCandidate]:
        raise NotImplementedError


class PlacesDirectory(ProviderDirectory):
    """
    Google Places + Nominatim directory search.

    ARGS:
        directory_limiter: RateLimiter for geocoding and Places calls
        web_limiter: RateLimiter for website fetches
        api_key: Google Places API key (defaults to GOOGLE_PLACES_API_KEY)
        geolocator: geopy geocoder, mainly for tests
        session: requests.Session, mainly for tests
    """

    def __init__(self, directory_limiter: RateLimiter, web_limiter: RateLimiter, api_key: Optional[str] = None,
                 geolocator: Any = None, session: Optional[requests.Session] = None,
                 geocode_cache: Optional[TTLCache] = None):
        self.directory_limiter = directory_limiter
        self.web_limiter = web_limiter
        self.api_key = api_key or os.getenv("GOOGLE_PLACES_API_KEY") or settings.GOOGLE_PLACES_API_KEY
        self.geolocator = geolocator or Nominatim(user_agent=settings.NOMINATIM_USER_AGENT)
        self.session = session or requests.Session()
        self._location_cache = geocode_cache or TTLCache(24 * 3600, name="geocode")

    # ── geocoding ─────────────────────────────────────────────────────────

    async def geocode(self, location: Optional[str]) -> Coordinate:
        """Coordinates for a place name; FALLBACK_COORDINATE when it cannot be resolved."""
        if not location:
            return settings.FALLBACK_COORDINATE
        cached = self._location_cache.get(location.lower())
        if cached is not None:
            return cached

        try:
            result = await self.directory_limiter.schedule(
                lambda: asyncio.to_thread(self.geolocator.geocode, location), priority=8
            )
        except Exception as e:
            logger.warning(f"Geocoding failed for {location}, using fallback coordinate: {e}")
            return settings.FALLBACK_COORDINATE
        if result is None:
            logger.warning(f"No geocoding result for {location}, using fallback coordinate")
            return settings.FALLBACK_COORDINATE

        coordinate = (result.latitude, result.longitude)
        self._location_cache.set(location.lower(), coordinate)
        return coordinate

    # ── Google Places ─────────────────────────────────────────────────────

    async def _get_json(self, url: str, params: Dict[str, Any], priority: int) -> Dict[str, Any]:
        def call():
            response = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()

        try:
            return await self.directory_limiter.schedule(lambda: asyncio.to_thread(call), priority=priority)
        except (requests.RequestException, ValueError) as e:
            raise ExternalDependencyError("directory", f"request to {url} failed", cause=e)

    async def text_search(self, query: str, coordinate: Coordinate, radius_km: float) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise ExternalDependencyError("directory", "GOOGLE_PLACES_API_KEY is not configured")
        data = await self._get_json(TEXT_SEARCH_URL, {
            "query": query,
            "location": f"{coordinate[0]},{coordinate[1]}",
            "radius": int(radius_km * 1000),
            "language": "es",
            "key": self.api_key,
        }, priority=7)
        status = data.get("status")
        if status != "OK":
            logger.warning(f"Google Places text search status for '{query}': {status}")
            return []
        return data.get("results") or []

    async def place_details(self, place_id: str) -> Dict[str, Any]:
        data = await self._get_json(DETAILS_URL, {
            "place_id": place_id,
            "fields": DETAILS_FIELDS,
            "language": "es",
            "key": self.api_key,
        }, priority=6)
        return data.get("result") or {}

    # ── website scraping ──────────────────────────────────────────────────

    async def scrape_contact_email(self, website: str) -> Optional[str]:
        """Best-effort: any failure just means no email."""
        def fetch():
            response = self.session.get(website, timeout=REQUEST_TIMEOUT, headers={"User-Agent": settings.NOMINATIM_USER_AGENT})
            response.raise_for_status()
            return response.text

        try:
            html = await self.web_limiter.schedule(lambda: asyncio.to_thread(fetch), priority=5)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Could not fetch {website}: {e}")
            return None
        return pick_contact_email(html)

    # ── combined search ───────────────────────────────────────────────────

    @staticmethod
    def _candidate(place: Dict[str, Any]) -> ProviderCandidate:
        geometry = (place.get("geometry") or {}).get("location") or {}
        location = (geometry["lat"], geometry["lng"]) if "lat" in geometry and "lng" in geometry else None
        return ProviderCandidate(
            name=place.get("name") or "",
            source=ProviderSource.DIRECTORY,
            address=place.get("formatted_address"),
            rating=place.get("rating"),
            total_ratings=place.get("user_ratings_total"),
            place_id=place.get("place_id"),
            location=location,
        )

    async def _enrich(self, candidate: ProviderCandidate) -> ProviderCandidate:
        try:
            details = await self.place_details(candidate.place_id)
            candidate.phone = details.get("international_phone_number") or details.get("formatted_phone_number")
            candidate.website = details.get("website")
        except ExternalDependencyError as e:
            logger.warning(f"Could not get details for {candidate.name}: {e}")
        if candidate.website:
            candidate.email = await self.scrape_contact_email(candidate.website)
        return candidate

    async def search(self, service: str, material: Optional[str] = None,
                     location: Optional[str] = None, radius_km: Optional[float] = None) -> List[ProviderCandidate]:
        """
        RAISES:
            ExternalDependencyError: the text search itself failed
        """
        location = location or settings.DEFAULT_SEARCH_LOCATION
        radius_km = radius_km or settings.DEFAULT_SEARCH_RADIUS_KM
        query = build_search_query(service, material, location)
        logger.info(f"🔍 Searching directory for '{query}' within {radius_km} km")

        center = await self.geocode(location)
        places = await self.text_search(query, center, radius_km)
        candidates = [self._candidate(p) for p in places if p.get("place_id")]
        candidates = [
            c for c in candidates
            if c.location is None or geodesic(center, c.location).km <= radius_km
        ]
        candidates = list(await asyncio.gather(*(self._enrich(c) for c in candidates)))

        with_email = sum(1 for c in candidates if c.email)
        logger.info(f"✅ Directory returned {len(candidates)} providers ({with_email} with email) for {service}")
        return candidates
