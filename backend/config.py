import os
from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '..', '.env'))

# Content generation
DIGEST_PROVIDER = os.getenv("DIGEST_PROVIDER", "anthropic").lower()
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
DIGEST_LANGUAGE = os.getenv("DIGEST_LANGUAGE", "English")

# Push delivery (access token is optional for Expo)
EXPO_ACCESS_TOKEN = os.getenv("EXPO_ACCESS_TOKEN")

# Storage
STORE_BACKEND = os.getenv("STORE_BACKEND", "file").lower()
DATA_FILE = os.getenv(
    "DATA_FILE", os.path.join(os.path.dirname(__file__), "data", "data.json")
)
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Scheduler
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
SCHEDULER_WORKERS = int(os.getenv("SCHEDULER_WORKERS", "1"))
SCHEDULER_THROTTLE_SECONDS = float(os.getenv("SCHEDULER_THROTTLE_SECONDS", "1.0"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

if DIGEST_PROVIDER not in ("anthropic", "openai"):
    raise ValueError(f"Unsupported DIGEST_PROVIDER: {DIGEST_PROVIDER}")
if STORE_BACKEND not in ("file", "supabase"):
    raise ValueError(f"Unsupported STORE_BACKEND: {STORE_BACKEND}")
if SCHEDULER_WORKERS < 1:
    raise ValueError("SCHEDULER_WORKERS must be at least 1")


def is_generator_configured() -> bool:
    """Check if the selected content provider has an API key."""
    if DIGEST_PROVIDER == "openai":
        return bool(OPENAI_API_KEY)
    return bool(ANTHROPIC_API_KEY)


def is_supabase_configured() -> bool:
    """Check if Supabase credentials are present."""
    return bool(SUPABASE_URL and SUPABASE_KEY)
