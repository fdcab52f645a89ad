import logging
import mimetypes
import os
import re
import time
import uuid
from pathlib import Path
from urllib.parse import quote, unquote

from firebase_admin import storage as firebase_storage
from google.api_core import exceptions as google_exceptions

from auth import get_firebase_app
from config import settings
from errors import ServiceError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

GCS_PUBLIC_URL = "https://storage.googleapis.com/{bucket}/{path}"


def safe_filename(name):
    name = os.path.basename(name or "") or "image"
    return _UNSAFE.sub("_", name)


class BlobStore:
    """Uploads image bytes by path and hands back public URLs."""

    def image_path(self, owner_id, filename):
        return f"memorials/{safe_filename(owner_id)}/{time.time_ns()}_{uuid.uuid4().hex[:8]}_{safe_filename(filename)}"

    def upload(self, path, data: bytes) -> str:
        raise NotImplementedError

    def delete(self, url):
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Image files under MEDIA_DIR, publicly served from MEDIA_BASE_URL."""

    def __init__(self, root=None, base_url=None):
        self.root = Path(root or settings.MEDIA_DIR)
        self.base_url = (base_url if base_url is not None else settings.MEDIA_BASE_URL).rstrip("/")

    def url_for(self, path):
        return f"{self.base_url}/{path}"

    def path_for(self, url):
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):]

    def _resolve(self, path):
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ServiceError(f"Refusing to touch a file outside the media directory: {path}")
        return target

    def upload(self, path, data: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Upload of {path} failed: {e}")
            raise ServiceError(f"Could not store image {os.path.basename(path)}") from e
        logger.info(f"Stored {path} ({len(data)} bytes)")
        return self.url_for(path)

    def delete(self, url):
        path = self.path_for(url)
        if path is None:
            raise ServiceError(f"Not a stored image: {url}")
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.warning(f"Image already gone: {path}")
        except OSError as e:
            logger.error(f"Delete of {path} failed: {e}")
            raise ServiceError(f"Could not delete image {os.path.basename(path)}") from e


class FirebaseBlobStore(BlobStore):
    """Images in a Firebase Storage bucket, made public on upload.

    Several API instances can share one bucket, unlike the local store.
    """

    def __init__(self, bucket=None, bucket_name=None):
        self._bucket = bucket
        self.bucket_name = bucket_name or settings.FIREBASE_STORAGE_BUCKET

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = firebase_storage.bucket(self.bucket_name, app=get_firebase_app())
        return self._bucket

    def url_for(self, path):
        return GCS_PUBLIC_URL.format(bucket=self.bucket.name, path=quote(path))

    def path_for(self, url):
        prefix = GCS_PUBLIC_URL.format(bucket=self.bucket.name, path="")
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):])

    def upload(self, path, data: bytes) -> str:
        content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        blob = self.bucket.blob(path)
        try:
            blob.upload_from_string(data, content_type=content_type)
            blob.make_public()
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Upload of {path} to bucket {self.bucket.name} failed: {e}")
            raise ServiceError(f"Could not store image {os.path.basename(path)}") from e
        logger.info(f"Stored gs://{self.bucket.name}/{path} ({len(data)} bytes)")
        return self.url_for(path)

    def delete(self, url):
        path = self.path_for(url)
        if path is None:
            raise ServiceError(f"Not a stored image: {url}")
        try:
            self.bucket.blob(path).delete()
        except google_exceptions.NotFound:
            logger.warning(f"Image already gone: gs://{self.bucket.name}/{path}")
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Delete of {path} failed: {e}")
            raise ServiceError(f"Could not delete image {os.path.basename(path)}") from e
