"""Central configuration loader for the Blueprint Coach system."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent
SCHEMAS_DIR = PROJECT_ROOT / "config" / "schemas"
SESSIONS_DIR = Path(os.getenv("SESSIONS_DIR", str(PROJECT_ROOT / "output" / "sessions")))

# Environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")

# Schema file paths
SESSION_SNAPSHOT_SCHEMA = SCHEMAS_DIR / "session_snapshot.schema.json"
SNAPSHOT_VERSION = 1

# Conversation limits
CONTEXT_WINDOW_TURNS = int(os.getenv("CONTEXT_WINDOW_TURNS", "10"))
COMPOSE_TIMEOUT_MS = int(os.getenv("COMPOSE_TIMEOUT_MS", "8000"))

# Persistence retry policy (best-effort background saves)
PERSIST_MAX_ATTEMPTS = int(os.getenv("PERSIST_MAX_ATTEMPTS", "3"))
PERSIST_BACKOFF_MAX_SECONDS = float(os.getenv("PERSIST_BACKOFF_MAX_SECONDS", "4"))
PERSIST_WORKERS = int(os.getenv("PERSIST_WORKERS", "2"))

# LLM configuration (for composed conversation turns and item suggestions)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1024"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_ENABLED = os.getenv("LLM_ENABLED", "true").lower() in ("true", "1", "yes")
