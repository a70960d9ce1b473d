import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


DATABASE_PATH = os.getenv("DATABASE_PATH", "prealert.db")
DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_DATA = _flag("SEED_DEMO_DATA", "true")

# Geoapify routing (two waypoints, drive mode)
ROUTING_URL = os.getenv("ROUTING_URL", "https://api.geoapify.com/v1/routing")
ROUTING_API_KEY = os.getenv("ROUTING_API_KEY", "")
ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "10"))
ROUTE_MIN_INTERVAL_SECONDS = float(os.getenv("ROUTE_MIN_INTERVAL_SECONDS", "5"))

# Average ambulance speed used by the closed-form ETA
AVERAGE_SPEED_KMH = float(os.getenv("AVERAGE_SPEED_KMH", "40"))

# Usernames are mapped to {username}@INTERNAL_EMAIL_DOMAIN before sign-in
INTERNAL_EMAIL_DOMAIN = os.getenv("INTERNAL_EMAIL_DOMAIN", "internal.example")

# Supabase GoTrue (optional). Local account table is used when unset.
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "10"))

# Recommendation oracle
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "auto")
LLM_MODEL = os.getenv("LLM_MODEL", "")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# GCP (optional)
GCP_PROJECT_ID = os.getenv("GCP_PROJECT_ID", "")
GCP_PUBSUB_TOPIC = os.getenv("GCP_PUBSUB_TOPIC", "")
GCP_PUBSUB_SUBSCRIPTION_PREFIX = os.getenv("GCP_PUBSUB_SUBSCRIPTION_PREFIX", "prealert-changes")


@dataclass
class Settings:
    """Runtime configuration for one application instance.

    Defaults come from the environment; tests build their own instance.
    """

    database_path: str = DATABASE_PATH
    database_url: str = DATABASE_URL
    database_max_connections: int = DATABASE_MAX_CONNECTIONS
    seed_demo_data: bool = SEED_DEMO_DATA

    routing_url: str = ROUTING_URL
    routing_api_key: str = ROUTING_API_KEY
    routing_timeout_seconds: float = ROUTING_TIMEOUT_SECONDS
    route_min_interval_seconds: float = ROUTE_MIN_INTERVAL_SECONDS
    average_speed_kmh: float = AVERAGE_SPEED_KMH

    internal_email_domain: str = INTERNAL_EMAIL_DOMAIN
    supabase_url: str = SUPABASE_URL
    supabase_anon_key: str = SUPABASE_ANON_KEY
    auth_timeout_seconds: float = AUTH_TIMEOUT_SECONDS

    llm_provider: str = LLM_PROVIDER
    llm_model: str = LLM_MODEL
    llm_base_url: str = LLM_BASE_URL
    anthropic_api_key: str = ANTHROPIC_API_KEY
    openai_api_key: str = OPENAI_API_KEY

    gcp_project_id: str = GCP_PROJECT_ID
    gcp_pubsub_topic: str = GCP_PUBSUB_TOPIC
    gcp_pubsub_subscription_prefix: str = GCP_PUBSUB_SUBSCRIPTION_PREFIX
