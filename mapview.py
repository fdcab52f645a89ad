"""Memorial map screen rendered with folium (Leaflet) over Mapbox tiles.

``MapService.ensure_loaded`` hands out an explicit ``MapHandle`` instead of
relying on a globally loaded map library. A ``MapScreen`` owns its marker
list and the map it last rendered and drops both on ``close()``; use it as a
context manager so that happens on every exit path.

Screen states::

    LOADING --load()--> READY --search_nearby()--> FILTERED
                          ^                            |
                          +-------- set_radius() ------+
"""

import html
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import folium

from config import settings
from errors import NotFound, ServiceError, ValidationError
from geo import bounds, distance_km

logger = logging.getLogger(__name__)

LOADING = "loading"
READY = "ready"
FILTERED = "filtered"

DEFAULT_ZOOM = 12
SELECTED_ZOOM = 15
FIT_PADDING = (50, 50)
OUT_OF_RANGE_OPACITY = 0.3
LIST_LIMIT = 6

TILES_URL = "https://api.mapbox.com/styles/v1/{style}/tiles/256/{{z}}/{{x}}/{{y}}@2x?access_token={token}"
ATTRIBUTION = '&copy; <a href="https://www.mapbox.com/">Mapbox</a> &copy; <a href="https://www.openstreetmap.org/copyright">OpenStreetMap</a>'


class MapHandle:
    def __init__(self, access_token, style):
        self.access_token = access_token
        self.style = style

    @property
    def tiles_url(self):
        return TILES_URL.format(style=self.style, token=self.access_token)

    def new_map(self, center, zoom):
        m = folium.Map(location=list(center), zoom_start=zoom, tiles=None, control_scale=True, zoom_control=True)
        folium.TileLayer(tiles=self.tiles_url, attr=ATTRIBUTION, name="Mapbox", max_zoom=22).add_to(m)
        return m


class MapService:
    def __init__(self, access_token=None, style=None):
        self.access_token = access_token if access_token is not None else settings.MAPBOX_ACCESS_TOKEN
        self.style = style or settings.MAPBOX_STYLE
        self._handle = None

    def ensure_loaded(self) -> MapHandle:
        if self._handle is None:
            if not self.access_token:
                raise ServiceError("The map is not available: no Mapbox access token configured.")
            self._handle = MapHandle(self.access_token, self.style)
        return self._handle


@dataclass
class MemorialMarker:
    memorial_id: int
    name: str
    owner_display_name: Optional[str]
    birth_date: Optional[str]
    death_date: Optional[str]
    latitude: float
    longitude: float
    distance_km: float
    in_range: Optional[bool] = None

    @property
    def opacity(self):
        return OUT_OF_RANGE_OPACITY if self.in_range is False else 1.0

    def popup_html(self):
        owner = html.escape(self.owner_display_name or "User")
        parts = [
            f"<h3>{html.escape(self.name)}</h3>",
            f"<p>By {owner}</p>",
        ]
        if self.birth_date:
            parts.append(f"<p>Born: {html.escape(self.birth_date)}</p>")
        if self.death_date:
            parts.append(f"<p>Died: {html.escape(self.death_date)}</p>")
        parts.append(f'<a href="/memorials/{self.memorial_id}/ar" target="_blank">View in AR</a>')
        return "<div class=\"memorial-popup\">" + "".join(parts) + "</div>"

    def to_dict(self):
        return {
            "id": self.memorial_id,
            "name": self.name,
            "owner_display_name": self.owner_display_name,
            "birth_date": self.birth_date,
            "death_date": self.death_date,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "distance_km": round(self.distance_km, 3),
            "in_range": self.in_range,
            "opacity": self.opacity,
        }


def check_radius(radius_km):
    if radius_km is None:
        return settings.DEFAULT_RADIUS_KM
    if not settings.MIN_RADIUS_KM <= radius_km <= settings.MAX_RADIUS_KM:
        raise ValidationError(
            f"Search radius must be between {settings.MIN_RADIUS_KM:g} and {settings.MAX_RADIUS_KM:g} km."
        )
    return radius_km


class MapScreen:

    def __init__(self, handle: MapHandle, load_public: Callable[[], list], viewer=None, radius_km=None):
        self.handle = handle
        self._load_public = load_public
        self.viewer_is_default = viewer is None
        self.viewer = viewer or (settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE)
        self.radius_km = check_radius(radius_km)
        self.state = LOADING
        self.center = self.viewer
        self.zoom = DEFAULT_ZOOM
        self.fit = None
        self.selected_id = None
        self.markers: List[MemorialMarker] = []
        self._map = None
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def load(self):
        try:
            records = list(self._load_public())
        except Exception:
            logger.exception("Could not load public memorials; showing an empty map")
            records = []

        self.markers = []
        for record in records:
            if record.latitude is None or record.longitude is None:
                continue
            self.markers.append(MemorialMarker(
                memorial_id=record.memorial_id,
                name=record.name,
                owner_display_name=record.owner_display_name,
                birth_date=record.birth_date,
                death_date=record.death_date,
                latitude=record.latitude,
                longitude=record.longitude,
                distance_km=distance_km(self.viewer[0], self.viewer[1], record.latitude, record.longitude),
            ))
        self.state = READY
        logger.info(f"Map ready with {len(self.markers)} memorial marker(s)")
        return self

    def search_nearby(self, radius_km=None):
        """Mark every memorial in or out of range and fit the view to the in-range set."""
        self._ensure_loaded()
        if radius_km is not None:
            self.radius_km = check_radius(radius_km)

        nearby = []
        for marker in self.markers:
            marker.in_range = marker.distance_km <= self.radius_km
            if marker.in_range:
                nearby.append(marker)

        if nearby:
            points = [self.viewer] + [(m.latitude, m.longitude) for m in nearby]
            self.fit = bounds(points)
        else:
            self.fit = None
        self.state = FILTERED
        return sorted(nearby, key=lambda m: m.distance_km)

    def set_radius(self, radius_km):
        self._ensure_loaded()
        self.radius_km = check_radius(radius_km)
        for marker in self.markers:
            marker.in_range = None
        self.fit = None
        self.state = READY

    def select(self, memorial_id):
        self._ensure_loaded()
        for marker in self.markers:
            if marker.memorial_id == memorial_id:
                self.selected_id = memorial_id
                self.center = (marker.latitude, marker.longitude)
                self.zoom = SELECTED_ZOOM
                self.fit = None
                return marker
        raise NotFound("That memorial is not on the map.")

    def list_items(self):
        return self.markers[:LIST_LIMIT]

    def render(self) -> str:
        self._ensure_loaded()
        m = self.handle.new_map(self.center, self.zoom)

        folium.Marker(
            location=list(self.viewer),
            popup=folium.Popup("<p>Your location</p>", max_width=200),
            tooltip="Your location",
            icon=folium.Icon(color="blue", icon="user", prefix="fa"),
        ).add_to(m)

        for marker in self.markers:
            color = "orange" if marker.memorial_id == self.selected_id else "green"
            folium.Marker(
                location=[marker.latitude, marker.longitude],
                popup=folium.Popup(marker.popup_html(), max_width=260),
                tooltip=marker.name,
                icon=folium.Icon(color=color, icon="tree", prefix="fa"),
                opacity=marker.opacity,
            ).add_to(m)

        if self.fit:
            m.fit_bounds(self.fit, padding=FIT_PADDING)

        self._map = m
        return m.get_root().render()

    def to_dict(self):
        return {
            "state": self.state,
            "viewer": {"latitude": self.viewer[0], "longitude": self.viewer[1], "is_default": self.viewer_is_default},
            "radius_km": self.radius_km,
            "center": {"latitude": self.center[0], "longitude": self.center[1]},
            "zoom": self.zoom,
            "bounds": self.fit,
            "selected_id": self.selected_id,
            "markers": [marker.to_dict() for marker in self.markers],
            "list": [marker.to_dict() for marker in self.list_items()],
        }

    def close(self):
        self.markers = []
        self._map = None
        self._load_public = None
        self.closed = True

    def _ensure_loaded(self):
        if self.closed:
            raise ServiceError("This map screen has been closed.")
        if self.state == LOADING:
            raise ServiceError("The map is still loading.")


def render_picker(handle: MapHandle, picker) -> str:
    """Picker map: its single draggable marker plus a click-for-coordinates popup."""
    m = handle.new_map(picker.center, picker.zoom)
    if picker.marker is not None:
        tooltip = picker.selection.address if picker.selection else "Selected location"
        folium.Marker(
            location=list(picker.marker),
            tooltip=tooltip,
            draggable=True,
            icon=folium.Icon(color="green", icon="map-marker", prefix="fa"),
        ).add_to(m)
    folium.LatLngPopup().add_to(m)
    return m.get_root().render()
