from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    FRONTEND_ORIGIN: str = "*"

    MAPBOX_ACCESS_TOKEN: str = ""
    MAPBOX_STYLE: str = "mapbox/outdoors-v12"
    GEOCODING_TIMEOUT: float = 10.0

    # DATABASE_URL wins; otherwise a MySQL URL is built from the DB_* values
    DATABASE_URL: Optional[str] = None
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_HOST: str = "localhost"
    DB_NAME: str = "memorials"
    DB_SSL_CA: Optional[str] = None
    SQL_ECHO: bool = False

    # "local" keeps images under MEDIA_DIR; "firebase" uses FIREBASE_STORAGE_BUCKET
    STORAGE_BACKEND: str = "local"
    MEDIA_DIR: str = "media"
    MEDIA_BASE_URL: str = "/media"
    MODEL_BASE_URL: str = "/static/models"
    AR_FALLBACK_URL: str = "/galeria"

    FIREBASE_CREDENTIALS: Optional[str] = None
    FIREBASE_PROJECT_ID: Optional[str] = None
    FIREBASE_STORAGE_BUCKET: Optional[str] = None

    DEFAULT_LATITUDE: float = 40.7128
    DEFAULT_LONGITUDE: float = -74.0060
    DEFAULT_RADIUS_KM: float = 10.0
    MIN_RADIUS_KM: float = 1.0
    MAX_RADIUS_KM: float = 50.0
    MAX_IMAGES: int = 5
    PICKER_TTL_SECONDS: int = 1800

    class Config:
        env_file = ".env"

settings = Settings()
