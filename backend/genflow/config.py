"""
Runtime configuration loaded from the environment (and a local .env file).
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---- Undo history ----
UNDO_MAX_HISTORY = _env_int("UNDO_MAX_HISTORY", 50)
UNDO_DEBOUNCE_SECONDS = _env_float("UNDO_DEBOUNCE_SECONDS", 0.5)
# Immediate pushes closer together than this belong to one compound action
UNDO_BATCH_SECONDS = _env_float("UNDO_BATCH_SECONDS", 0.05)

# ---- Execution ----
DEFAULT_PROVIDER_ID = os.getenv("DEFAULT_PROVIDER_ID", "mistral")
COMPRESS_THRESHOLD_CHARS = _env_int("COMPRESS_THRESHOLD_CHARS", 2500)

# ---- Provider gateway ----
PROVIDER_TIMEOUT_SECONDS = _env_float("PROVIDER_TIMEOUT_SECONDS", 120.0)
IMAGE_PROVIDER_ID = os.getenv("IMAGE_PROVIDER_ID", "openrouter")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "")
