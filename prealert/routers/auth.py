import logging

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials

from prealert.dependencies import Services, bearer, current_session, get_services
from prealert.errors import Unauthorized
from prealert.models.session import LoginRequest, SessionInfo
from prealert.services.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=SessionInfo)
async def login(payload: LoginRequest, services: Services = Depends(get_services)):
    """Sign in with a username (or email) and password.

    The returned token goes in ``Authorization: Bearer <token>`` and in the
    ``token`` query parameter of the WebSocket channels.
    """
    session = await services.sessions.login(payload.identifier, payload.password)
    return session.info(include_token=True)


@router.post("/logout", status_code=204)
async def logout(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    services: Services = Depends(get_services),
):
    """End the session and close its live channels."""
    if credentials is None:
        raise Unauthorized("Missing bearer token")
    await services.sessions.logout(credentials.credentials)


@router.get("/me", response_model=SessionInfo)
async def me(session: Session = Depends(current_session)):
    return session.info()
