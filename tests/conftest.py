import os

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory DB and no external API keys for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["ROUTING_API_KEY"] = ""
os.environ["SUPABASE_URL"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["GCP_PROJECT_ID"] = ""
os.environ["GCP_PUBSUB_TOPIC"] = ""

from prealert.config import Settings
from prealert.dependencies import build_services
from prealert.main import create_app
from prealert.models.session import AppUser

PASSWORD = "correct-horse"

# Demo seed: ambulance amb-001 at Times Square, three hospitals nearby
AMBULANCE_ID = "amb-001"
CITYCARE = "hosp-citycare"
GENERAL = "hosp-general"
ECU = "hosp-ecu"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_path=":memory:",
        database_url="",
        seed_demo_data=True,
        routing_api_key="",
        route_min_interval_seconds=5.0,
        supabase_url="",
        llm_provider="auto",
        anthropic_api_key="",
        openai_api_key="",
        gcp_project_id="",
        gcp_pubsub_topic="",
    )
    values.update(overrides)
    return Settings(**values)


def make_patient(**overrides) -> dict:
    patient = {
        "id": "pat-1",
        "name": "Jane Doe",
        "age": 54,
        "gender": "female",
        "contact": "+1-555-0101",
        "vitals": {
            "spo2": 91,
            "heart_rate": 118,
            "blood_pressure_sys": 150,
            "blood_pressure_dia": 95,
            "temperature": 37.4,
            "gcs": 14,
        },
        "complaint": "Chest pain",
        "triage_level": "critical",
    }
    patient.update(overrides)
    return patient


def bearer(session) -> dict:
    return {"Authorization": f"Bearer {session.token}"}


async def add_user(services, username: str, role: str, linked_entity: str | None = None) -> AppUser:
    """Register a local account and the app_users row that gives it a role."""
    email = f"{username}@{services.settings.internal_email_domain}"
    auth_uid = await services.identity.register(email, PASSWORD)
    return await services.store.insert_user(AppUser(
        id=f"user-{username}",
        username=username,
        auth_uid=auth_uid,
        role=role,
        linked_entity=linked_entity,
    ))


async def sign_in(services, username: str, role: str, linked_entity: str | None = None):
    await add_user(services, username, role, linked_entity)
    return await services.sessions.login(username, PASSWORD)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def services(settings):
    """Fresh in-memory database and service container for each test."""
    container = await build_services(settings)
    yield container
    await container.close()


@pytest_asyncio.fixture
async def ambulance(services):
    return await sign_in(services, "amb001", "ambulance", AMBULANCE_ID)


@pytest_asyncio.fixture
async def citycare(services):
    return await sign_in(services, "citycare", "hospital", CITYCARE)


@pytest_asyncio.fixture
async def general(services):
    return await sign_in(services, "general", "hospital", GENERAL)


@pytest_asyncio.fixture
async def admin(services):
    return await sign_in(services, "admin", "admin")


@pytest_asyncio.fixture
async def async_client(services):
    """Async httpx client bound to an app that reuses the test's services."""
    app = create_app(services=services)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
