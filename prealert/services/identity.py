"""Identity providers: who is signing in.

The provider only proves a credential and hands back an auth uid; the
role and linked entity come from the ``app_users`` table.
"""

import logging
import uuid
from dataclasses import dataclass

import httpx
from werkzeug.security import check_password_hash, generate_password_hash

from prealert.errors import InvalidArgument, Unauthorized, Unavailable
from prealert.services.store import DataStore

logger = logging.getLogger(__name__)


@dataclass
class AuthResult:
    auth_uid: str
    access_token: str | None = None


class IdentityProvider:
    async def sign_in(self, email: str, password: str) -> AuthResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def sign_out(self, access_token: str | None) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class LocalIdentityProvider(IdentityProvider):
    """Accounts kept in the ``auth_accounts`` table with werkzeug password hashes."""

    def __init__(self, store: DataStore) -> None:
        self.store = store

    async def register(self, email: str, password: str) -> str:
        email = email.strip().lower()
        if not email or not password:
            raise InvalidArgument("Email and password are required")
        if await self.store.get_auth_account(email):
            raise InvalidArgument(f"Account {email} already exists")
        auth_uid = str(uuid.uuid4())
        await self.store.insert_auth_account(email, auth_uid, generate_password_hash(password))
        return auth_uid

    async def sign_in(self, email: str, password: str) -> AuthResult:
        account = await self.store.get_auth_account(email.strip().lower())
        if not account:
            raise Unauthorized("Invalid username or password")
        if not check_password_hash(account["password_hash"], password):
            raise Unauthorized("Invalid username or password")
        return AuthResult(auth_uid=account["auth_uid"])

    async def sign_out(self, access_token: str | None) -> None:
        return


class GoTrueIdentityProvider(IdentityProvider):
    """Supabase GoTrue password grant over HTTP."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"apikey": self._anon_key},
        )

    async def sign_in(self, email: str, password: str) -> AuthResult:
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/auth/v1/token",
                    params={"grant_type": "password"},
                    json={"email": email, "password": password},
                )
        except httpx.HTTPError as exc:
            logger.error("Identity provider unreachable: %s", exc)
            raise Unavailable("Identity provider unreachable; please retry") from exc

        if resp.status_code in (400, 401, 422):
            raise Unauthorized("Invalid username or password")
        if resp.status_code >= 400:
            logger.error("Identity provider error %s: %s", resp.status_code, resp.text[:200])
            raise Unavailable(f"Identity provider error {resp.status_code}")

        try:
            data = resp.json()
            return AuthResult(auth_uid=data["user"]["id"], access_token=data.get("access_token"))
        except (ValueError, KeyError, TypeError) as exc:
            raise Unavailable("Malformed identity provider response") from exc

    async def sign_out(self, access_token: str | None) -> None:
        if not access_token:
            return
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/auth/v1/logout",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Identity provider sign-out failed: %s", exc)
