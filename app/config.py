"""
Configuration module for the MedGate service.

All settings come from environment variables and are collected into a frozen
``Settings`` snapshot. Trust anchors (bootstrap identities) and the role
policy come from JSON files named by the environment; there are no built-in
users or credentials.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    env: str = "dev"  # dev|stage|prod

    nonce_ttl_seconds: int = 300
    nonce_backend: str = "sqlite"  # memory|sqlite
    session_ttl_seconds: int = 86400
    audit_max_page_size: int = 1000

    ledger_backend: str = "sqlite"  # memory|sqlite|http
    ledger_url: str = ""
    ledger_timeout_seconds: float = 5.0
    ledger_retry_attempts: int = 8
    ledger_retry_initial_seconds: float = 0.5
    ledger_retry_max_seconds: float = 30.0
    ledger_retry_interval_seconds: float = 10.0
    ledger_abandoned_retry_seconds: float = 300.0
    ledger_max_in_flight: int = 4

    content_store_backend: str = "filesystem"  # memory|filesystem|ipfs
    content_store_path: str = "data/content"
    ipfs_api_url: str = "http://127.0.0.1:5001"
    storage_timeout_seconds: float = 10.0
    storage_workers: int = 8
    record_catalog_backend: str = "sqlite"  # memory|sqlite
    grant_window_seconds: int = 300

    db_path: str = "data/medgate.db"
    audit_signing_key_path: str = "secrets/audit_signing_key.json"
    bootstrap_path: Optional[str] = None
    policy_path: Optional[str] = None

    log_level: str = "INFO"
    log_json: bool = True
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("MEDGATE_ENV", "dev"),
            nonce_ttl_seconds=_env_int("NONCE_TTL_SECONDS", 300),
            nonce_backend=os.getenv("NONCE_BACKEND", "sqlite"),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 86400),
            audit_max_page_size=_env_int("AUDIT_MAX_PAGE_SIZE", 1000),
            ledger_backend=os.getenv("LEDGER_BACKEND", "sqlite"),
            ledger_url=os.getenv("LEDGER_URL", ""),
            ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", 5.0),
            ledger_retry_attempts=_env_int("LEDGER_RETRY_ATTEMPTS", 8),
            ledger_retry_initial_seconds=_env_float("LEDGER_RETRY_INITIAL_SECONDS", 0.5),
            ledger_retry_max_seconds=_env_float("LEDGER_RETRY_MAX_SECONDS", 30.0),
            ledger_retry_interval_seconds=_env_float("LEDGER_RETRY_INTERVAL_SECONDS", 10.0),
            ledger_abandoned_retry_seconds=_env_float("LEDGER_ABANDONED_RETRY_SECONDS", 300.0),
            ledger_max_in_flight=_env_int("LEDGER_MAX_IN_FLIGHT", 4),
            content_store_backend=os.getenv("CONTENT_STORE_BACKEND", "filesystem"),
            content_store_path=os.getenv("CONTENT_STORE_PATH", "data/content"),
            ipfs_api_url=os.getenv("IPFS_API_URL", "http://127.0.0.1:5001"),
            storage_timeout_seconds=_env_float("STORAGE_TIMEOUT_SECONDS", 10.0),
            storage_workers=_env_int("STORAGE_WORKERS", 8),
            record_catalog_backend=os.getenv("RECORD_CATALOG_BACKEND", "sqlite"),
            grant_window_seconds=_env_int("GRANT_WINDOW_SECONDS", 300),
            db_path=os.getenv("MEDGATE_DB_PATH", "data/medgate.db"),
            audit_signing_key_path=os.getenv("AUDIT_SIGNING_KEY_PATH", "secrets/audit_signing_key.json"),
            bootstrap_path=os.getenv("BOOTSTRAP_PATH") or None,
            policy_path=os.getenv("POLICY_PATH") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
            log_file=os.getenv("LOG_FILE") or None,
        )

    def is_production(self) -> bool:
        return self.env == "prod"


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_bootstrap(path: Optional[str]) -> List[Dict[str, Any]]:
    """
    Bootstrap identities: either a JSON list or ``{"identities": [...]}``.

    Without a bootstrap file the service starts with no administrators and
    cannot approve registrations.
    """
    if not path:
        logger.warning("BOOTSTRAP_PATH not set; no administrators are configured")
        return []
    data = load_json(path)
    records = data.get("identities", []) if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise ValueError(f"{path}: bootstrap identities must be a list")
    return records


def load_policy(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    return load_json(path)


def validate_config(settings: Settings) -> Dict[str, bool]:
    """
    Validate that configured files exist.
    Returns dict of name -> exists.
    """
    paths = {"audit_signing_key": settings.audit_signing_key_path}
    if settings.bootstrap_path:
        paths["bootstrap"] = settings.bootstrap_path
    if settings.policy_path:
        paths["policy"] = settings.policy_path
    return {name: Path(path).exists() for name, path in paths.items()}
