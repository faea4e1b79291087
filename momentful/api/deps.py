import asyncio
import logging
from dataclasses import dataclass
from typing import Annotated, Optional

import firebase_admin
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials

from momentful.config import Settings
from momentful.container import GenerationServices
from momentful.exceptions import AuthError

logger = logging.getLogger(__name__)

_firebase_app = None


def get_firebase_app(settings: Settings) -> firebase_admin.App:
    global _firebase_app
    if _firebase_app is None:
        try:
            _firebase_app = firebase_admin.get_app()
        except ValueError:
            # App not initialized yet
            if settings.firebase_project_id:
                cred = credentials.ApplicationDefault()
                _firebase_app = firebase_admin.initialize_app(
                    cred, {"projectId": settings.firebase_project_id}
                )
            else:
                _firebase_app = firebase_admin.initialize_app()
    return _firebase_app


# Use auto_error=False to allow dev token bypass
security = HTTPBearer(auto_error=False)

DEV_TOKEN = "dev-token"

TOKEN_ERRORS = (
    ValueError,
    firebase_auth.InvalidIdTokenError,
    firebase_auth.RevokedIdTokenError,
    firebase_auth.UserDisabledError,
    firebase_auth.CertificateFetchError,
)


def get_services(request: Request) -> GenerationServices:
    return request.app.state.services


Services = Annotated[GenerationServices, Depends(get_services)]


@dataclass
class AuthenticatedUser:
    """Identity of the caller. Firebase uid, or the dev user in dev mode."""

    id: str


async def current_user_id(
    settings: Settings, credentials: Optional[HTTPAuthorizationCredentials]
) -> str | None:
    """Return the caller's user id, or None when the request is unauthenticated."""
    token = credentials.credentials if credentials else None

    if settings.dev_mode and (token is None or token == DEV_TOKEN):
        return settings.dev_user_id
    if not token:
        return None

    try:
        get_firebase_app(settings)
        decoded_token = await asyncio.to_thread(firebase_auth.verify_id_token, token)
    except TOKEN_ERRORS as e:
        logger.info(f"Rejected authentication token: {e}")
        return None
    return decoded_token["uid"]


async def get_current_user(
    services: Services,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> AuthenticatedUser:
    user_id = await current_user_id(services.settings, credentials)
    if user_id is None:
        raise AuthError("Missing or invalid authentication token")
    return AuthenticatedUser(id=user_id)


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
