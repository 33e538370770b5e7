"""Configuration for the chat backend."""

import os
from dotenv import load_dotenv

# Load local env files if present (never commit these).
# - `.env.local` is convenient for local dev.
# - `.env` is the default for docker-compose variable substitution.
load_dotenv(dotenv_path=".env.local", override=False)
load_dotenv(dotenv_path=".env", override=False)

# Environment name (used for warnings/behavior toggles)
ENV = os.getenv("ENV", "development")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Database URL (async driver recommended: postgresql+asyncpg://...).
# When unset, conversations are kept in JSON files under DATA_DIR.
DATABASE_URL = os.getenv("DATABASE_URL")

# Auth: allow bypassing session auth in local dev. Every request then acts as LOCAL_USER_ID.
ALLOW_NO_AUTH = os.getenv("ALLOW_NO_AUTH", "false").lower() == "true"
LOCAL_USER_ID = os.getenv("LOCAL_USER_ID", "00000000-0000-0000-0000-000000000001")

# Session token hashing pepper/secret (required when ALLOW_NO_AUTH is false).
SESSION_TOKEN_PEPPER = os.getenv("SESSION_TOKEN_PEPPER", "")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_id")
SESSION_DURATION_SECONDS = int(os.getenv("SESSION_DURATION_SECONDS", str(7 * 24 * 60 * 60)))

# Upstream model provider (OpenAI-compatible chat completions endpoint)
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")

# Vision-capable model for turns with images; cheaper text-only model otherwise.
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o")
TEXT_MODEL = os.getenv("TEXT_MODEL", "gpt-4o-mini")

# Upstream httpx client knobs
LLM_MAX_CONNECTIONS = int(os.getenv("LLM_MAX_CONNECTIONS", "20"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "120.0"))

# Conversation lifecycle
TITLE_MAX_CHARS = int(os.getenv("TITLE_MAX_CHARS", "50"))
DEFAULT_CONVERSATION_TITLE = os.getenv("DEFAULT_CONVERSATION_TITLE", "New Conversation")

# How many background persistence failures are kept for inspection.
PERSISTENCE_FAILURE_LOG_SIZE = int(os.getenv("PERSISTENCE_FAILURE_LOG_SIZE", "100"))


def _parse_csv_list(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [v.strip() for v in value.split(",")]
    items = [v for v in items if v]
    return items or None


def cors_allow_origins() -> list[str]:
    origins = _parse_csv_list(os.getenv("CORS_ALLOW_ORIGINS"))
    if origins:
        return origins
    if ENV == "production":
        return []
    return ["http://localhost:3000", "http://localhost:5173"]


# Data directory for conversation storage (JSON store only)
DATA_DIR = os.getenv("DATA_DIR", "data/conversations")
