from __future__ import annotations
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

# ---- store ----
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{BASE_DIR / 'spellcast.sqlite3'}")

# ---- identity (tokens are issued elsewhere; we only verify) ----
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_SUPER_SECRET")
JWT_ALG = os.getenv("JWT_ALG", "HS256")

# ---- payment processor ----
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_SIGNATURE_TOLERANCE_SEC = _env_int("STRIPE_SIGNATURE_TOLERANCE_SEC", 300)

# ---- money (integer minor units everywhere) ----
DEFAULT_MONTHLY_CAP_CENTS = _env_int("DEFAULT_MONTHLY_CAP_CENTS", 10000)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd")

# ---- runtimes ----
HTTP_RUNTIME_TIMEOUT_SEC = _env_int("HTTP_RUNTIME_TIMEOUT_SEC", 30)
WASM_FUEL = _env_int("WASM_FUEL", 500_000_000)
WASM_MAX_OUTPUT_BYTES = _env_int("WASM_MAX_OUTPUT_BYTES", 1024 * 1024)
WASM_MAX_MODULE_BYTES = _env_int("WASM_MAX_MODULE_BYTES", 20 * 1024 * 1024)

# ---- webhooks ----
WEBHOOK_PENDING_STALE_SEC = _env_int("WEBHOOK_PENDING_STALE_SEC", 300)

# ---- logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", False)
