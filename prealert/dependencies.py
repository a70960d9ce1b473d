import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from prealert.config import Settings
from prealert.database import DatabaseAdapter, connect_db, init_db
from prealert.errors import Unauthorized
from prealert.services.alerts import AlertLifecycle
from prealert.services.change_feed import ChangeFeed, build_change_feed
from prealert.services.identity import GoTrueIdentityProvider, IdentityProvider, LocalIdentityProvider
from prealert.services.llm import LLMClient
from prealert.services.recommendations import HospitalRecommender
from prealert.services.routing import RoutingClient
from prealert.services.sessions import Session, SessionManager
from prealert.services.store import DataStore
from prealert.services.throttle import KeyedThrottle
from prealert.services.tracking import AmbulanceTracker
from prealert.services.vitals_relay import VitalsRelay

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one application instance talks to."""

    settings: Settings
    db: DatabaseAdapter
    feed: ChangeFeed
    store: DataStore
    identity: IdentityProvider
    sessions: SessionManager
    alerts: AlertLifecycle
    routing: RoutingClient
    throttle: KeyedThrottle
    tracker: AmbulanceTracker
    vitals: VitalsRelay
    llm: LLMClient
    recommender: HospitalRecommender

    async def close(self) -> None:
        self.throttle.cancel_all()
        await self.sessions.close_all()
        await self.db.close()


async def build_services(
    settings: Settings,
    *,
    identity: IdentityProvider | None = None,
    routing: RoutingClient | None = None,
    llm: LLMClient | None = None,
) -> Services:
    db = await connect_db(settings)
    await init_db(db, settings)
    feed = build_change_feed(settings)
    store = DataStore(db, feed)

    if identity is None:
        if settings.supabase_url:
            logger.info("Using Supabase identity provider")
            identity = GoTrueIdentityProvider(
                settings.supabase_url,
                settings.supabase_anon_key,
                timeout=settings.auth_timeout_seconds,
            )
        else:
            identity = LocalIdentityProvider(store)

    if routing is None:
        routing = RoutingClient(
            settings.routing_url,
            settings.routing_api_key,
            timeout=settings.routing_timeout_seconds,
        )
    if not routing.configured():
        logger.warning("ROUTING_API_KEY not set; routes use straight-line estimates")

    llm = llm or LLMClient(settings)
    alerts = AlertLifecycle(store, speed_kmh=settings.average_speed_kmh)
    throttle = KeyedThrottle(settings.route_min_interval_seconds)

    return Services(
        settings=settings,
        db=db,
        feed=feed,
        store=store,
        identity=identity,
        sessions=SessionManager(store, identity, feed, email_domain=settings.internal_email_domain),
        alerts=alerts,
        routing=routing,
        throttle=throttle,
        tracker=AmbulanceTracker(store, alerts, routing, throttle),
        vitals=VitalsRelay(store, feed),
        llm=llm,
        recommender=HospitalRecommender(alerts, llm, speed_kmh=settings.average_speed_kmh),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


bearer = HTTPBearer(auto_error=False)


def current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    services: Services = Depends(get_services),
) -> Session:
    if credentials is None:
        raise Unauthorized("Missing bearer token")
    return services.sessions.get(credentials.credentials)
