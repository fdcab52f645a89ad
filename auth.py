import logging
from typing import Optional

import firebase_admin
from fastapi import Header
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions
from pydantic import BaseModel

from config import settings
from errors import AuthError, ServiceError

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


def get_firebase_app():
    """Initialise the default Firebase app once and return it."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
    if settings.FIREBASE_CREDENTIALS:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS)
    else:
        cred = credentials.ApplicationDefault()
    logger.info("Initialising Firebase app")
    return firebase_admin.initialize_app(cred, options)


def verify_token(id_token) -> CurrentUser:
    try:
        claims = firebase_auth.verify_id_token(id_token, app=get_firebase_app())
    except (firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
            firebase_auth.RevokedIdTokenError, ValueError) as e:
        logger.info(f"Rejected ID token: {e}")
        raise AuthError("Please sign in again.") from e
    except firebase_exceptions.FirebaseError as e:
        logger.error(f"Firebase token verification failed: {e}")
        raise ServiceError("Sign-in service is unavailable.") from e

    return CurrentUser(uid=claims["uid"], email=claims.get("email"), display_name=claims.get("name"))


def _bearer(authorization):
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    token = _bearer(authorization)
    if token is None:
        raise AuthError("You must be signed in.")
    return verify_token(token)


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    token = _bearer(authorization)
    if token is None:
        return None
    return verify_token(token)
