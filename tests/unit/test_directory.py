# --------------------------- tests/unit/test_directory.py ----------------------------
"""
Quote Intake · Provider Directory Tests

The Places endpoints, the geocoder and websites are replaced by mocks.
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.services.providers import PlacesDirectory, build_search_query, pick_contact_email
from quote_intake.services.providers.directory import DETAILS_URL, TEXT_SEARCH_URL
from quote_intake.services.rate_limiter import RateLimiter, RateLimiterConfig

MADRID = SimpleNamespace(latitude=40.4168, longitude=-3.7038)


def response(json_data=None, text=""):
    mock = Mock()
    mock.json.return_value = json_data
    mock.text = text
    mock.raise_for_status.return_value = None
    return mock


def place(place_id, name, lat, lng, rating=4.0):
    return {"place_id": place_id, "name": name, "rating": rating, "formatted_address": f"{name}, Madrid",
            "geometry": {"location": {"lat": lat, "lng": lng}}}


def fake_session(places, status="OK", websites=None):
    websites = websites or {}

    def get(url, params=None, timeout=None, headers=None):
        if url == TEXT_SEARCH_URL:
            return response({"status": status, "results": places})
        if url == DETAILS_URL:
            website = f"https://{params['place_id']}.es"
            return response({"result": {"website": website, "formatted_phone_number": "910 000 000"}})
        if url in websites:
            return response(text=websites[url])
        raise requests.ConnectionError(url)

    session = Mock()
    session.get = Mock(side_effect=get)
    return session


def directory(session, geolocator=None, api_key="test-key"):
    if geolocator is None:
        geolocator = Mock()
        geolocator.geocode = Mock(return_value=MADRID)
    return PlacesDirectory(
        RateLimiter(RateLimiterConfig(name="directory", max_concurrent=2)),
        RateLimiter(RateLimiterConfig(name="web", max_concurrent=2)),
        api_key=api_key, geolocator=geolocator, session=session,
    )


class TestHelpers:
    """Query building and contact email selection."""

    def test_build_search_query(self):
        assert build_search_query("soldadura_tig", "acero", "Getafe") == "soldadura tig acero industrial taller Getafe"

    def test_pick_contact_email_skips_generic_addresses(self):
        html = """
            <a href="mailto:user@example.com">x</a> logo@2x.png noreply@anodizados.es
            tracking@sentry.io <a href="mailto:Ventas@Anodizados.es">ventas</a>
        """
        assert pick_contact_email(html) == "ventas@anodizados.es"
        assert pick_contact_email("sin correo") is None


class TestPlacesDirectory:
    """Geocode, radius filter and enrichment."""

    @pytest.mark.asyncio
    async def test_search_enriches_and_filters_by_radius(self):
        session = fake_session(
            [place("near", "Anodizados Getafe", 40.30, -3.73), place("far", "Anodizados Valencia", 39.47, -0.38)],
            websites={"https://near.es": "<p>Contacto: comercial@anodizados-getafe.es</p>"},
        )

        candidates = await directory(session).search("anodizado", "aluminio", "Madrid", radius_km=50)

        assert [c.place_id for c in candidates] == ["near"]
        assert candidates[0].email == "comercial@anodizados-getafe.es"
        assert candidates[0].phone == "910 000 000"
        assert candidates[0].website == "https://near.es"

    @pytest.mark.asyncio
    async def test_geocode_failure_uses_fallback_coordinate(self):
        geolocator = Mock()
        geolocator.geocode = Mock(side_effect=TimeoutError("nominatim"))

        assert await directory(fake_session([]), geolocator).geocode("Nowhere") == settings.FALLBACK_COORDINATE

    @pytest.mark.asyncio
    async def test_geocode_is_cached(self):
        places = directory(fake_session([]))

        await places.geocode("Madrid")
        await places.geocode("madrid")

        places.geolocator.geocode.assert_called_once()

    @pytest.mark.asyncio
    async def test_non_ok_status_returns_no_candidates(self):
        candidates = await directory(fake_session([], status="ZERO_RESULTS")).search("temple")

        assert candidates == []

    @pytest.mark.asyncio
    async def test_missing_api_key_is_an_external_error(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_PLACES_API_KEY", raising=False)
        monkeypatch.setattr(settings, "GOOGLE_PLACES_API_KEY", None)

        with pytest.raises(ExternalDependencyError):
            await directory(fake_session([]), api_key=None).search("temple")

    @pytest.mark.asyncio
    async def test_unreachable_website_means_no_email(self):
        session = fake_session([place("near", "Temples Centro", 40.42, -3.70)])

        (candidate,) = await directory(session).search("temple")

        assert candidate.email is None
        assert candidate.website == "https://near.es"
