import logging
from typing import List, NamedTuple, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import catalog
from config import settings
from errors import NotFound, PermissionDenied, ServiceError, ValidationError
from geo import position_key
from location import LocationSelection
from models import Memorial

logger = logging.getLogger(__name__)


class ImageUpload(NamedTuple):
    filename: str
    data: bytes


class MemorialForm(BaseModel):
    name: str
    model_ref: str = catalog.DEFAULT_MODEL
    birth_date: Optional[str] = None
    death_date: Optional[str] = None
    song_link: Optional[str] = None
    is_public: bool = False


class MemorialChanges(BaseModel):
    name: Optional[str] = None
    model_ref: Optional[str] = None
    birth_date: Optional[str] = None
    death_date: Optional[str] = None
    song_link: Optional[str] = None
    is_public: Optional[bool] = None


# --- validation / shaping ---

def validate_form(name, model_ref):
    if name is not None and not name.strip():
        raise ValidationError("A memorial needs a name.")
    if model_ref is not None and not catalog.is_known_model(model_ref):
        raise ValidationError(f"Unknown 3D model: {model_ref}")


def build_location(is_public: bool, selection: Optional[LocationSelection], existing=None) -> dict:
    """Location columns for a write.

    A private memorial never keeps coordinates, whatever was selected before.
    A public one needs either a fresh selection or an already stored location.
    """
    if not is_public:
        return {"latitude": None, "longitude": None, "address": None, "position_key": None}

    if selection is None:
        if existing is not None:
            return dict(existing)
        raise ValidationError("Choose a location on the map to make this memorial public.")

    return {
        "latitude": selection.latitude,
        "longitude": selection.longitude,
        "address": selection.address,
        "position_key": position_key(selection.latitude, selection.longitude),
    }


def display_name_for(user):
    if user.display_name:
        return user.display_name
    if user.email:
        return user.email.split("@")[0]
    return None


def _upload_all(store, owner_id, images: List[ImageUpload]):
    # one file at a time, in order
    urls = []
    try:
        for image in images:
            urls.append(store.upload(store.image_path(owner_id, image.filename), image.data))
    except ServiceError:
        _discard(store, urls)
        raise
    return urls


def _discard(store, urls):
    for url in urls:
        try:
            store.delete(url)
        except ServiceError as e:
            logger.warning(f"Could not remove image {url}: {e.message}")


def _commit(db: Session, what):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while {what}: {e}")
        raise ServiceError(f"Could not save the memorial ({what}).") from e


# --- operations ---

def create_memorial(db: Session, store, user, form: MemorialForm,
                    selection: Optional[LocationSelection] = None,
                    images: Optional[List[ImageUpload]] = None) -> Memorial:
    images = images or []
    validate_form(form.name, form.model_ref)
    if len(images) > settings.MAX_IMAGES:
        raise ValidationError(f"You can upload at most {settings.MAX_IMAGES} images.")
    location = build_location(form.is_public, selection)

    urls = _upload_all(store, user.uid, images)

    memorial = Memorial(
        owner_id=user.uid,
        owner_display_name=display_name_for(user),
        name=form.name.strip(),
        model_ref=form.model_ref,
        birth_date=form.birth_date or None,
        death_date=form.death_date or None,
        song_link=form.song_link or None,
        images=urls,
        is_public=form.is_public,
        **location,
    )
    db.add(memorial)
    try:
        _commit(db, "creating")
    except ServiceError:
        _discard(store, urls)
        raise
    db.refresh(memorial)
    logger.info(f"Memorial {memorial.memorial_id} created by {user.uid} ({len(urls)} image(s), public={form.is_public})")
    return memorial


def list_owned(db: Session, owner_id) -> List[Memorial]:
    stmt = (
        select(Memorial)
        .where(Memorial.owner_id == owner_id)
        .order_by(Memorial.created_at.desc(), Memorial.memorial_id.desc())
    )
    return list(db.execute(stmt).scalars().all())


def list_public(db: Session) -> List[Memorial]:
    """Every public memorial that has a location."""
    stmt = select(Memorial).where(Memorial.is_public.is_(True))
    return [m for m in db.execute(stmt).scalars().all() if m.location is not None]


def get_memorial(db: Session, memorial_id, viewer_id=None) -> Memorial:
    memorial = db.get(Memorial, memorial_id)
    if memorial is None:
        raise NotFound("Memorial not found.")
    if not memorial.is_public and memorial.owner_id != viewer_id:
        raise NotFound("Memorial not found.")
    return memorial


def get_owned(db: Session, memorial_id, owner_id) -> Memorial:
    memorial = db.get(Memorial, memorial_id)
    if memorial is None:
        raise NotFound("Memorial not found.")
    if memorial.owner_id != owner_id:
        raise PermissionDenied("You do not have permission to edit this memorial.")
    return memorial


def update_memorial(db: Session, store, user, memorial_id, changes: MemorialChanges,
                    selection: Optional[LocationSelection] = None,
                    images: Optional[List[ImageUpload]] = None) -> Memorial:
    memorial = get_owned(db, memorial_id, user.uid)
    validate_form(changes.name, changes.model_ref)

    is_public = memorial.is_public if changes.is_public is None else changes.is_public
    location = build_location(is_public, selection, existing=memorial.location)

    urls = _upload_all(store, user.uid, images or [])

    for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
        if field == "name":
            value = value.strip()
        elif field in ("birth_date", "death_date", "song_link"):
            value = value or None
        setattr(memorial, field, value)
    memorial.is_public = is_public
    for column, value in location.items():
        setattr(memorial, column, value)
    if urls:
        memorial.images = list(memorial.images or []) + urls
    memorial.owner_display_name = display_name_for(user) or memorial.owner_display_name

    try:
        _commit(db, "updating")
    except ServiceError:
        _discard(store, urls)
        raise
    db.refresh(memorial)
    logger.info(f"Memorial {memorial.memorial_id} updated (+{len(urls)} image(s), public={is_public})")
    return memorial


def remove_image(db: Session, store, user, memorial_id, url) -> Memorial:
    memorial = get_owned(db, memorial_id, user.uid)
    current = list(memorial.images or [])
    if url not in current:
        raise NotFound("That image is not part of this memorial.")

    store.delete(url)
    memorial.images = [img for img in current if img != url]
    _commit(db, "removing an image")
    db.refresh(memorial)
    return memorial


def delete_memorial(db: Session, store, user, memorial_id):
    memorial = get_owned(db, memorial_id, user.uid)
    urls = list(memorial.images or [])
    db.delete(memorial)
    _commit(db, "deleting")

    # the row is gone; a blob that will not delete is only an orphan
    for url in urls:
        try:
            store.delete(url)
        except ServiceError as e:
            logger.error(f"Could not delete image {url} of memorial {memorial_id}: {e.message}")
    logger.info(f"Memorial {memorial_id} deleted by {user.uid}")


def to_dict(memorial: Memorial) -> dict:
    return {
        "id": memorial.memorial_id,
        "owner_id": memorial.owner_id,
        "owner_display_name": memorial.owner_display_name,
        "name": memorial.name,
        "model_ref": memorial.model_ref,
        "model_url": catalog.model_url(memorial.model_ref),
        "birth_date": memorial.birth_date,
        "death_date": memorial.death_date,
        "song_link": memorial.song_link,
        "song_embed_url": catalog.youtube_embed_url(memorial.song_link),
        "images": list(memorial.images or []),
        "is_public": memorial.is_public,
        "location": memorial.location,
        "created_at": memorial.created_at.isoformat() if memorial.created_at else None,
        "updated_at": memorial.updated_at.isoformat() if memorial.updated_at else None,
    }
