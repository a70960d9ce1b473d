import logging
import secrets
from dataclasses import dataclass, field

from prealert.errors import NotFound, Unauthorized
from prealert.models.session import Role, SessionInfo
from prealert.services.change_feed import ChangeFeed
from prealert.services.identity import IdentityProvider
from prealert.services.store import DataStore
from prealert.services.subscriptions import Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)


def to_login_email(identifier: str, domain: str) -> str:
    """Bare usernames sign in as ``{username}@{domain}``."""
    identifier = identifier.strip()
    if "@" in identifier:
        return identifier.lower()
    return f"{identifier.lower()}@{domain}"


@dataclass
class Session:
    user_id: str
    username: str
    role: Role
    linked_entity: str | None
    token: str
    access_token: str | None = None
    subscriptions: SubscriptionRegistry = field(default_factory=SubscriptionRegistry)

    def info(self, include_token: bool = False) -> SessionInfo:
        return SessionInfo(
            user_id=self.user_id,
            username=self.username,
            role=self.role,
            linked_entity=self.linked_entity,
            token=self.token if include_token else None,
        )


class SessionManager:
    """Signed-in sessions for this process, keyed by bearer token."""

    def __init__(
        self,
        store: DataStore,
        identity: IdentityProvider,
        feed: ChangeFeed,
        email_domain: str = "internal.example",
    ) -> None:
        self.store = store
        self.identity = identity
        self.feed = feed
        self.email_domain = email_domain
        self._sessions: dict[str, Session] = {}

    async def login(self, identifier: str, password: str) -> Session:
        if not identifier or not identifier.strip() or not password:
            raise Unauthorized("Username and password are required")

        email = to_login_email(identifier, self.email_domain)
        result = await self.identity.sign_in(email, password)

        user = await self.store.get_user_by_auth_uid(result.auth_uid)
        if user is None:
            # Credential is valid but nothing says what this person may do
            await self.identity.sign_out(result.access_token)
            raise NotFound(f"No user profile for {identifier}")

        session = Session(
            user_id=user.id,
            username=user.username,
            role=user.role,
            linked_entity=user.linked_entity,
            token=secrets.token_urlsafe(32),
            access_token=result.access_token,
        )
        self._sessions[session.token] = session
        logger.info("User %s signed in as %s", user.username, user.role)
        return session

    def get(self, token: str | None) -> Session:
        session = self._sessions.get(token or "")
        if session is None:
            raise Unauthorized("Not signed in")
        return session

    def open_subscription(self, session: Session, table: str, filters: dict[str, str] | None = None) -> Subscription:
        return session.subscriptions.add(Subscription(self.feed, table, filters))

    async def logout(self, token: str) -> None:
        session = self._sessions.pop(token, None)
        if session is None:
            raise Unauthorized("Not signed in")
        session.subscriptions.close_all()
        await self.identity.sign_out(session.access_token)
        logger.info("User %s signed out", session.username)

    async def close_all(self) -> None:
        for token in list(self._sessions):
            session = self._sessions.pop(token)
            session.subscriptions.close_all()

    def __len__(self) -> int:
        return len(self._sessions)
