"""Environment-driven settings and local directory hardening."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError


DEFAULT_HOME = Path.home() / ".governor"
DEFAULT_CARD_TTL_SECONDS = 3600
PAYMENT_PROVIDERS = ("mock", "stripe")

GOVERNOR_HOME_ENV = "GOVERNOR_HOME"
GOVERNOR_DB_PATH_ENV = "GOVERNOR_DB_PATH"
GOVERNOR_AUDIT_PATH_ENV = "GOVERNOR_AUDIT_PATH"
GOVERNOR_PAYMENT_PROVIDER_ENV = "GOVERNOR_PAYMENT_PROVIDER"
GOVERNOR_CARD_TTL_ENV = "GOVERNOR_CARD_TTL_SECONDS"
GOVERNOR_LOG_LEVEL_ENV = "GOVERNOR_LOG_LEVEL"
STRIPE_SECRET_KEY_ENV = "STRIPE_SECRET_KEY"
STRIPE_CARDHOLDER_ID_ENV = "STRIPE_CARDHOLDER_ID"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


@dataclass
class Settings:
    home: Path
    db_path: Path
    audit_path: Path
    audit_key_path: Path
    payment_provider: str = "mock"
    stripe_secret_key: Optional[str] = None
    stripe_cardholder_id: Optional[str] = None
    card_ttl_seconds: int = DEFAULT_CARD_TTL_SECONDS
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        home = Path(env.get(GOVERNOR_HOME_ENV) or DEFAULT_HOME).expanduser()
        db_path = Path(env.get(GOVERNOR_DB_PATH_ENV) or home / "governor.sqlite3").expanduser()
        audit_path = Path(env.get(GOVERNOR_AUDIT_PATH_ENV) or home / "audit.jsonl").expanduser()

        provider = (env.get(GOVERNOR_PAYMENT_PROVIDER_ENV) or "mock").strip().lower()
        if provider not in PAYMENT_PROVIDERS:
            raise ConfigError(
                f"Unknown payment provider '{provider}' "
                f"(expected one of: {', '.join(PAYMENT_PROVIDERS)})"
            )

        raw_ttl = env.get(GOVERNOR_CARD_TTL_ENV)
        try:
            ttl = int(raw_ttl) if raw_ttl else DEFAULT_CARD_TTL_SECONDS
        except ValueError:
            raise ConfigError(f"{GOVERNOR_CARD_TTL_ENV} must be an integer, got {raw_ttl!r}") from None
        if ttl <= 0:
            raise ConfigError(f"{GOVERNOR_CARD_TTL_ENV} must be positive")

        return cls(
            home=home,
            db_path=db_path,
            audit_path=audit_path,
            audit_key_path=home / "secrets" / "audit_hmac.key",
            payment_provider=provider,
            stripe_secret_key=env.get(STRIPE_SECRET_KEY_ENV) or None,
            stripe_cardholder_id=env.get(STRIPE_CARDHOLDER_ID_ENV) or None,
            card_ttl_seconds=ttl,
            log_level=(env.get(GOVERNOR_LOG_LEVEL_ENV) or "WARNING").upper(),
        )
