import logging
import re
from typing import List, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field
from sqlalchemy import select

from config import settings
from db import SessionLocal
from errors import LocationUnavailable, ServiceError, ValidationError
from models import Memorial

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
CURRENT_LOCATION = "current location"

FALLBACK_ADDRESS = re.compile(r"^-?\d+\.\d+, -?\d+\.\d+$")


class LocationSelection(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str


class Place(BaseModel):
    name: str
    address: str
    latitude: float
    longitude: float


def make_selection(latitude, longitude, address) -> LocationSelection:
    try:
        return LocationSelection(latitude=latitude, longitude=longitude, address=address)
    except ValueError as e:
        raise ValidationError(f"Invalid location ({latitude}, {longitude})") from e


def fallback_address(latitude, longitude):
    return f"{latitude:.4f}, {longitude:.4f}"


class MapboxGeocoder:
    """Forward and reverse lookups against the Mapbox geocoding API."""

    def __init__(self, access_token=None, timeout=None, session=None):
        self.access_token = access_token if access_token is not None else settings.MAPBOX_ACCESS_TOKEN
        self.timeout = timeout or settings.GEOCODING_TIMEOUT
        self.session = session or requests.Session()

    def _features(self, query):
        url = GEOCODING_URL.format(query=quote(query, safe=",-."))
        try:
            response = self.session.get(url, params={"access_token": self.access_token}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Geocoding request failed for {query!r}: {e}")
            raise ServiceError("Geocoding service is unavailable") from e
        return data.get("features") or []

    def reverse(self, latitude, longitude) -> Optional[str]:
        """Top result's place name for a coordinate, or None when there is no result."""
        features = self._features(f"{longitude},{latitude}")
        if not features:
            return None
        return features[0].get("place_name")

    def forward(self, text) -> List[Place]:
        places = []
        for feature in self._features(text):
            lng, lat = feature["center"]
            places.append(Place(
                name=feature.get("text", ""),
                address=feature.get("place_name", ""),
                latitude=lat,
                longitude=lng,
            ))
        return places


def resolve_address(geocoder, latitude, longitude):
    """Reverse geocode, degrading to a "lat, lng" string on empty result or failure."""
    try:
        address = geocoder.reverse(latitude, longitude)
    except ServiceError:
        logger.warning(f"Reverse geocoding failed at ({latitude}, {longitude}); using coordinates")
        return fallback_address(latitude, longitude)
    return address or fallback_address(latitude, longitude)


def device_location(latitude=None, longitude=None, error=None) -> LocationSelection:
    """Turn a device geolocation report into a selection.

    The device path never reverse geocodes. A reported error or missing
    coordinates raises LocationUnavailable so the caller can tell the user.
    """
    if error or latitude is None or longitude is None:
        logger.info(f"Device location unavailable: {error or 'no coordinates'}")
        raise LocationUnavailable(
            "Could not get your current location. Pick a point on the map instead."
        )
    return make_selection(latitude, longitude, CURRENT_LOCATION)


def update_location_data(geocoder=None):
    """Re-resolve public memorials whose address is still a coordinate fallback."""
    geocoder = geocoder or MapboxGeocoder()
    db = SessionLocal()
    updated = 0

    try:
        stmt = select(Memorial).where(
            (Memorial.is_public.is_(True)) &
            (Memorial.latitude.isnot(None)) &
            (Memorial.longitude.isnot(None))
        )
        memorials = db.execute(stmt).scalars().all()

        for m in memorials:
            if m.address and not FALLBACK_ADDRESS.match(m.address):
                continue
            address = geocoder.reverse(m.latitude, m.longitude)
            if not address:
                continue
            m.address = address
            updated += 1
            logger.info(f"Memorial {m.memorial_id} -> {address}")

        db.commit()
        return f"Updated {updated} memorial(s)"

    except Exception as e:
        db.rollback()
        logger.error(f"Address update failed: {e}")
        raise ServiceError(f"Address update failed: {e}") from e

    finally:
        db.close()
