import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, File, Form, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import catalog
import memorials
from auth import CurrentUser, get_current_user, get_optional_user
from config import settings
from db import get_db, init_db
from errors import MemorialError, ValidationError
from geo import within_radius
from location import LocationSelection, MapboxGeocoder, fallback_address, make_selection, update_location_data
from mapview import MapScreen, MapService, check_radius, render_picker
from memorials import ImageUpload, MemorialChanges, MemorialForm
from picker import registry
from storage import BlobStore, FirebaseBlobStore, LocalBlobStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_geocoder = None
_map_service = None
_bucket_store = None


def get_geocoder():
    global _geocoder
    if _geocoder is None:
        _geocoder = MapboxGeocoder()
    return _geocoder


def get_map_service():
    global _map_service
    if _map_service is None:
        _map_service = MapService()
    return _map_service


def get_store():
    global _bucket_store
    if settings.STORAGE_BACKEND == "firebase":
        if _bucket_store is None:
            _bucket_store = FirebaseBlobStore()
        return _bucket_store
    return LocalBlobStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database ready")
    yield


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
os.makedirs(settings.MEDIA_DIR, exist_ok=True)
app.mount(settings.MEDIA_BASE_URL, StaticFiles(directory=settings.MEDIA_DIR, check_dir=False), name="media")


@app.exception_handler(MemorialError)
async def memorial_error_handler(request, exc: MemorialError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _read_images(files) -> List[ImageUpload]:
    uploads = []
    for f in files or []:
        if not f.filename:
            continue
        uploads.append(ImageUpload(filename=f.filename, data=f.file.read()))
    return uploads


def _picker(user, picker_id):
    return registry.get(picker_id, user.uid) if picker_id else None


def _selection(picker, latitude, longitude, address) -> Optional[LocationSelection]:
    # the picker stays open until the write succeeds so a rejected form can be resubmitted
    if picker is not None:
        return picker.current()
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise ValidationError("A location needs both latitude and longitude.")
    return make_selection(latitude, longitude, address or fallback_address(latitude, longitude))


def _finish(picker):
    if picker is not None:
        picker.close()
        registry.close(picker.id)


# --- catalog ---

@app.get("/models")
def get_models():
    return {"models": catalog.list_models(), "default": catalog.DEFAULT_MODEL}


# --- memorials ---

@app.post("/memorials", status_code=201)
def create_memorial(
    name: str = Form(...),
    model_ref: str = Form(catalog.DEFAULT_MODEL),
    birth_date: Optional[str] = Form(None),
    death_date: Optional[str] = Form(None),
    song_link: Optional[str] = Form(None),
    is_public: bool = Form(False),
    picker_id: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    address: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
):
    form = MemorialForm(
        name=name, model_ref=model_ref, birth_date=birth_date,
        death_date=death_date, song_link=song_link, is_public=is_public,
    )
    picker = _picker(user, picker_id) if is_public else None
    selection = _selection(picker, latitude, longitude, address) if is_public else None
    memorial = memorials.create_memorial(db, store, user, form, selection, _read_images(images))
    _finish(picker)
    return memorials.to_dict(memorial)


@app.get("/memorials")
def gallery(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"memorials": [memorials.to_dict(m) for m in memorials.list_owned(db, user.uid)]}


@app.get("/memorials/public")
def public_memorials(db: Session = Depends(get_db)):
    return {"memorials": [memorials.to_dict(m) for m in memorials.list_public(db)]}


@app.get("/memorials/nearby")
def nearby_memorials(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius: Optional[float] = None,
    db: Session = Depends(get_db),
):
    is_default = lat is None or lng is None
    viewer = (settings.DEFAULT_LATITUDE, settings.DEFAULT_LONGITUDE) if is_default else (lat, lng)
    radius_km = check_radius(radius)
    results = sorted(within_radius(viewer, memorials.list_public(db), radius_km), key=lambda r: r[1])
    return {
        "viewer": {"latitude": viewer[0], "longitude": viewer[1], "is_default": is_default},
        "radius_km": radius_km,
        "memorials": [
            {**memorials.to_dict(m), "distance_km": round(dist, 3), "in_range": in_range}
            for m, dist, in_range in results
        ],
    }


@app.get("/memorials/{memorial_id}")
def get_memorial(
    memorial_id: int,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    memorial = memorials.get_memorial(db, memorial_id, user.uid if user else None)
    return memorials.to_dict(memorial)


@app.get("/memorials/{memorial_id}/ar")
def memorial_ar(
    memorial_id: int,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    memorial = memorials.get_memorial(db, memorial_id, user.uid if user else None)
    return {"id": memorial.memorial_id, "name": memorial.name, **catalog.ar_links(memorial)}


@app.patch("/memorials/{memorial_id}")
def update_memorial(
    memorial_id: int,
    name: Optional[str] = Form(None),
    model_ref: Optional[str] = Form(None),
    birth_date: Optional[str] = Form(None),
    death_date: Optional[str] = Form(None),
    song_link: Optional[str] = Form(None),
    is_public: Optional[bool] = Form(None),
    picker_id: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    address: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
):
    submitted = {
        "name": name, "model_ref": model_ref, "birth_date": birth_date,
        "death_date": death_date, "song_link": song_link, "is_public": is_public,
    }
    changes = MemorialChanges(**{k: v for k, v in submitted.items() if v is not None})
    picker = _picker(user, picker_id)
    selection = _selection(picker, latitude, longitude, address)
    memorial = memorials.update_memorial(db, store, user, memorial_id, changes, selection, _read_images(images))
    _finish(picker)
    return memorials.to_dict(memorial)


@app.delete("/memorials/{memorial_id}/images")
def delete_memorial_image(
    memorial_id: int,
    url: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
):
    memorial = memorials.remove_image(db, store, user, memorial_id, url)
    return memorials.to_dict(memorial)


@app.delete("/memorials/{memorial_id}", status_code=204)
def delete_memorial(
    memorial_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_store),
):
    memorials.delete_memorial(db, store, user, memorial_id)


# --- location picker ---

class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class DeviceReport(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    error: Optional[str] = None


class SearchRequest(BaseModel):
    query: str


class OpenPickerRequest(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


@app.post("/pickers", status_code=201)
def open_picker(
    request: Optional[OpenPickerRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    geocoder: MapboxGeocoder = Depends(get_geocoder),
):
    center = None
    if request and request.latitude is not None and request.longitude is not None:
        center = (request.latitude, request.longitude)
    return registry.open(geocoder, user.uid, center).state()


@app.get("/pickers/{picker_id}")
def picker_state(picker_id: str, user: CurrentUser = Depends(get_current_user)):
    return registry.get(picker_id, user.uid).state()


@app.post("/pickers/{picker_id}/device")
def picker_device(picker_id: str, report: DeviceReport, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    picker.use_device(report.latitude, report.longitude, report.error)
    return picker.state()


@app.post("/pickers/{picker_id}/click")
def picker_click(picker_id: str, point: Coordinates, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    picker.click(point.latitude, point.longitude)
    return picker.state()


@app.post("/pickers/{picker_id}/drag")
def picker_drag(picker_id: str, point: Coordinates, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    picker.drag(point.latitude, point.longitude)
    return picker.state()


@app.post("/pickers/{picker_id}/search")
def picker_search(picker_id: str, request: SearchRequest, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    picker.search(request.query)
    return picker.state()


@app.get("/pickers/{picker_id}/map", response_class=HTMLResponse)
def picker_map(
    picker_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: MapService = Depends(get_map_service),
):
    picker = registry.get(picker_id, user.uid)
    return render_picker(service.ensure_loaded(), picker)


@app.post("/pickers/{picker_id}/confirm")
def picker_confirm(picker_id: str, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    selection = picker.confirm()
    registry.close(picker_id)
    return {"selection": selection.model_dump() if selection else None}


@app.delete("/pickers/{picker_id}", status_code=204)
def picker_cancel(picker_id: str, user: CurrentUser = Depends(get_current_user)):
    picker = registry.get(picker_id, user.uid)
    picker.cancel()
    registry.close(picker_id)


# --- memorial map ---

def _open_screen(service, db, lat, lng, radius):
    viewer = (lat, lng) if lat is not None and lng is not None else None
    return MapScreen(service.ensure_loaded(), lambda: memorials.list_public(db), viewer, radius)


@app.get("/map", response_class=HTMLResponse)
def memorial_map(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius: Optional[float] = None,
    nearby: bool = False,
    selected: Optional[int] = None,
    db: Session = Depends(get_db),
    service: MapService = Depends(get_map_service),
):
    with _open_screen(service, db, lat, lng, radius) as screen:
        screen.load()
        if nearby:
            screen.search_nearby()
        if selected is not None:
            screen.select(selected)
        return screen.render()


@app.get("/map/state")
def memorial_map_state(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius: Optional[float] = None,
    nearby: bool = False,
    selected: Optional[int] = None,
    db: Session = Depends(get_db),
    service: MapService = Depends(get_map_service),
):
    with _open_screen(service, db, lat, lng, radius) as screen:
        screen.load()
        if nearby:
            screen.search_nearby()
        if selected is not None:
            screen.select(selected)
        return screen.to_dict()


# --- maintenance ---

@app.post("/update-location")
def update_location(
    user: CurrentUser = Depends(get_current_user),
    geocoder: MapboxGeocoder = Depends(get_geocoder),
):
    message = update_location_data(geocoder)
    return {"message": message}
