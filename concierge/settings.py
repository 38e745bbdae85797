# concierge/settings.py

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import commentjson
from dotenv import load_dotenv

from concierge.base_utils import ConciergeError

load_dotenv()

logger = logging.getLogger("concierge")


class ConfigError(ConciergeError):
    pass


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- Configuration ---
USE_SIMULATED_AGENT = _env_flag("CONCIERGE_USE_SIMULATED_AGENT", True)
ENABLE_GENERATIVE_BACKGROUNDS = _env_flag("CONCIERGE_ENABLE_GENERATIVE_BACKGROUNDS", False)
IMAGE_PROVIDER = os.getenv("CONCIERGE_IMAGE_PROVIDER", "none")      # openai | none
IMAGE_MODEL = os.getenv("CONCIERGE_IMAGE_MODEL", "gpt-image-1")
IMAGE_SIZE = os.getenv("CONCIERGE_IMAGE_SIZE", "1536x1024")

AGENT_MODEL = os.getenv("CONCIERGE_AGENT_MODEL", "gemini-2.5-flash-lite")
AGENT_TIMEOUT = float(os.getenv("CONCIERGE_AGENT_TIMEOUT", "60"))
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

CAPTURE_POLICY_PATH = os.getenv("CONCIERGE_CAPTURE_POLICY_PATH")
CATALOG_PATH = os.getenv("CONCIERGE_CATALOG_PATH")

SESSION_TTL_SECONDS = os.getenv("CONCIERGE_SESSION_TTL_SECONDS")
HISTORY_TTL_SECONDS = int(os.getenv("CONCIERGE_HISTORY_TTL_SECONDS", str(24 * 3600)))
HISTORY_MAX_TOKENS = int(os.getenv("CONCIERGE_HISTORY_MAX_TOKENS", "8000"))


def session_ttl_seconds() -> Optional[int]:
    if not SESSION_TTL_SECONDS:
        return None
    return int(SESSION_TTL_SECONDS)


def load_commented_json(path: str | Path) -> Any:
    """
    Load a JSON-with-comments file. Fails fast when the file is missing or malformed.
    """
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found at '{cfg_path}'.")
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            return commentjson.load(f)
    except Exception as e:
        raise ConfigError(f"Config file '{cfg_path}' could not be parsed: {e}") from e


def load_capture_policy(path: str | Path | None = None) -> Dict[str, Any]:
    """
    Overrides for the capture heuristics (keyword vocabularies, action ids).
    Returns {} when no policy file is configured.
    """
    path = path or CAPTURE_POLICY_PATH
    if not path:
        return {}
    data = load_commented_json(path)
    if not isinstance(data, dict):
        raise ConfigError("Capture policy must be a JSON object")
    for key in ("life_event_terms", "action_vocabulary", "min_structured_body", "capture_rules"):
        if key in data:
            logger.debug(f"[settings] capture policy overrides '{key}'")
    return data


def load_catalog(path: str | Path | None = None) -> List[Dict[str, Any]]:
    path = path or CATALOG_PATH
    if not path:
        return []
    data = load_commented_json(path)
    if isinstance(data, dict):
        data = data.get("products", [])
    if not isinstance(data, list):
        raise ConfigError("Catalog must be a list of products or {\"products\": [...]}")
    return [p for p in data if isinstance(p, dict)]
