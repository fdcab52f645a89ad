"""Interactive location picker.

A picker holds at most one selection and one draggable marker. Map clicks,
marker drags and place searches all update it; every geocoding round trip
is tagged with a sequence number and only the most recently issued one may
write the selection, so a slow response cannot overwrite a newer pick.
"""

import logging
import threading
import time
import uuid
from typing import Dict, Optional

from config import settings
from errors import NotFound, PermissionDenied, PlaceNotFound, ServiceError
from location import LocationSelection, device_location, fallback_address, make_selection, resolve_address

logger = logging.getLogger(__name__)

SEARCH_ZOOM = 15


class LocationPicker:

    def __init__(self, geocoder, owner_id=None, center=None, zoom=12):
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.geocoder = geocoder
        self.center = center or (settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE)
        self.zoom = zoom
        self.marker = None
        self.selection: Optional[LocationSelection] = None
        self.closed = False
        self.touched = time.monotonic()
        self._seq = 0
        self._lock = threading.Lock()

    # -- sequencing -------------------------------------------------------

    def _issue(self):
        with self._lock:
            self._ensure_open()
            self._seq += 1
            self.touched = time.monotonic()
            return self._seq

    def _apply(self, seq, selection, center=None, zoom=None):
        """Store a geocoding result if it belongs to the latest request."""
        with self._lock:
            if self.closed or seq != self._seq:
                logger.info(f"Picker {self.id}: dropping stale response #{seq} (latest #{self._seq})")
                return False
            self.selection = selection
            self.marker = (selection.latitude, selection.longitude)
            if center is not None:
                self.center = center
                self.zoom = zoom or self.zoom
            return True

    def _ensure_open(self):
        if self.closed:
            raise NotFound("This location picker is closed")

    # -- sources ----------------------------------------------------------

    def use_device(self, latitude=None, longitude=None, error=None):
        selection = device_location(latitude, longitude, error)
        seq = self._issue()
        self._apply(seq, selection, center=(selection.latitude, selection.longitude))
        return self.selection

    def click(self, latitude, longitude):
        """Place (or move) the marker at a clicked point and resolve its address.

        The marker only moves once the lookup is applied, so a dropped
        response leaves marker and selection together where they were.
        """
        point = make_selection(latitude, longitude, fallback_address(latitude, longitude))
        seq = self._issue()
        address = resolve_address(self.geocoder, latitude, longitude)
        self._apply(seq, point.model_copy(update={"address": address}))
        return self.selection

    def drag(self, latitude, longitude):
        return self.click(latitude, longitude)

    def search(self, text):
        text = (text or "").strip()
        if not text:
            raise PlaceNotFound("Enter a place to search for")
        seq = self._issue()
        try:
            places = self.geocoder.forward(text)
        except ServiceError as e:
            raise PlaceNotFound(f"Could not search for {text!r} right now") from e
        if not places:
            raise PlaceNotFound(f"No place found for {text!r}")

        top = places[0]
        selection = make_selection(top.latitude, top.longitude, top.address)
        self._apply(seq, selection, center=(top.latitude, top.longitude), zoom=SEARCH_ZOOM)
        return self.selection

    # -- lifecycle --------------------------------------------------------

    def current(self) -> Optional[LocationSelection]:
        """The selection so far, leaving the picker open."""
        with self._lock:
            self._ensure_open()
            return self.selection

    def confirm(self) -> Optional[LocationSelection]:
        with self._lock:
            self._ensure_open()
            self.closed = True
            return self.selection

    def close(self):
        with self._lock:
            self.closed = True

    def cancel(self):
        with self._lock:
            self.selection = None
            self.marker = None
        self.close()

    def state(self):
        return {
            "id": self.id,
            "center": {"latitude": self.center[0], "longitude": self.center[1]},
            "zoom": self.zoom,
            "marker": None if self.marker is None else {"latitude": self.marker[0], "longitude": self.marker[1]},
            "selection": self.selection.model_dump() if self.selection else None,
            "closed": self.closed,
        }


class PickerRegistry:
    """Open pickers keyed by id, scoped to the user who opened them."""

    def __init__(self, ttl_seconds=None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.PICKER_TTL_SECONDS
        self._pickers: Dict[str, LocationPicker] = {}
        self._lock = threading.Lock()

    def open(self, geocoder, owner_id, center=None):
        picker = LocationPicker(geocoder, owner_id=owner_id, center=center)
        with self._lock:
            self._expire()
            self._pickers[picker.id] = picker
        return picker

    def get(self, picker_id, owner_id):
        with self._lock:
            self._expire()
            picker = self._pickers.get(picker_id)
        if picker is None:
            raise NotFound("Location picker not found")
        if picker.owner_id != owner_id:
            raise PermissionDenied("This location picker belongs to another user")
        return picker

    def close(self, picker_id):
        with self._lock:
            self._pickers.pop(picker_id, None)

    def _expire(self):
        now = time.monotonic()
        stale = [pid for pid, p in self._pickers.items() if now - p.touched > self.ttl_seconds]
        for pid in stale:
            self._pickers.pop(pid).cancel()

    def __len__(self):
        return len(self._pickers)


registry = PickerRegistry()
