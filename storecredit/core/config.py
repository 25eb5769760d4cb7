# storecredit/core/config.py
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import FrozenSet, List, Optional

from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")


def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_ids(raw: str) -> FrozenSet[str]:
    return frozenset(token.strip() for token in (raw or "").split(",") if token.strip())


# ================== DATABASE ==================

def get_database_url() -> str:
    """Get database URL - explicit DATABASE_URL, MySQL, or local SQLite."""
    url = os.environ.get("DATABASE_URL", "").strip()
    if url:
        return url

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host:
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "storecredit")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "storecredit.db"
    return f"sqlite+aiosqlite:///{db_path}"


# ================== SETTINGS ==================

@dataclass(frozen=True)
class Settings:
    database_url: str = field(default_factory=get_database_url)

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Ledger policy
    earn_rate: Decimal = Decimal("0.05")
    balance_cap: Decimal = Decimal("100")
    reservation_ttl_hours: int = 24

    # Reconciliation
    recovery_window_minutes: int = 60
    session_retry_delay_seconds: float = 2.0
    order_atomic_updates: bool = True

    # Store retries (linear backoff: backoff * attempt)
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.5

    cleanup_max_age_hours: int = 24

    # Auth
    jwt_secret: str = "default_secret_key"
    jwt_algorithm: str = "HS256"
    admin_user_ids: FrozenSet[str] = frozenset()

    notification_webhook_url: str = ""

    log_dir: str = "logs"
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=get_database_url(),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip(),
            earn_rate=Decimal(env("CREDIT_EARN_RATE", default="0.05")),
            balance_cap=Decimal(env("CREDIT_BALANCE_CAP", default="100")),
            reservation_ttl_hours=int(env("RESERVATION_TTL_HOURS", default="24")),
            recovery_window_minutes=int(env("RECOVERY_WINDOW_MINUTES", default="60")),
            session_retry_delay_seconds=float(env("SESSION_RETRY_DELAY_SECONDS", default="2")),
            order_atomic_updates=env_bool("ORDER_ATOMIC_UPDATES", default=True),
            store_retry_attempts=int(env("STORE_RETRY_ATTEMPTS", default="3")),
            store_retry_backoff_seconds=float(env("STORE_RETRY_BACKOFF_SECONDS", default="0.5")),
            cleanup_max_age_hours=int(env("CLEANUP_MAX_AGE_HOURS", default="24")),
            jwt_secret=env("JWT_SECRET", default="default_secret_key"),
            jwt_algorithm=env("JWT_ALGORITHM", default="HS256"),
            admin_user_ids=_parse_ids(os.getenv("ADMIN_USER_IDS", "")),
            notification_webhook_url=os.getenv("NOTIFICATION_WEBHOOK_URL", "").strip(),
            log_dir=env("LOG_DIR", default="logs"),
            log_level=env("LOG_LEVEL", default="INFO").upper(),
            cors_origins=env("CORS_ORIGINS", default="*").split(","),
        )
