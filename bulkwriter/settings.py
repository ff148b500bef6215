"""
Runtime settings read from the environment.

Call ``load_env()`` first to pick up a ``.env`` file.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import ValidationError

# Limits of a single batch on the bulk service.
DEFAULT_MAX_RECORDS = 10_000
DEFAULT_MAX_BYTES = 10_000_000

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    api_url: Optional[str] = None
    api_token: Optional[str] = None
    api_version: str = "v1"
    request_timeout: float = 30.0
    max_records: int = DEFAULT_MAX_RECORDS
    max_bytes: int = DEFAULT_MAX_BYTES
    db_path: Path = Path("data/bulkwriter.db")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        errors: List[str] = []

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = int(raw)
            except ValueError:
                errors.append(f"{name} must be an integer, got {raw!r}")
                return default
            if value <= 0:
                errors.append(f"{name} must be positive, got {value}")
            return value

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return float(raw)
            except ValueError:
                errors.append(f"{name} must be a number, got {raw!r}")
                return default

        log_level = (env.get("LOG_LEVEL") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")
            log_level = "INFO"

        settings = cls(
            api_url=env.get("BULK_API_URL") or None,
            api_token=env.get("BULK_API_TOKEN") or None,
            api_version=env.get("BULK_API_VERSION") or "v1",
            request_timeout=_float("BULK_REQUEST_TIMEOUT", 30.0),
            max_records=_int("BULK_BATCH_MAX_RECORDS", DEFAULT_MAX_RECORDS),
            max_bytes=_int("BULK_BATCH_MAX_BYTES", DEFAULT_MAX_BYTES),
            db_path=Path(env.get("BULK_DB_PATH") or "data/bulkwriter.db"),
            log_level=log_level,
        )
        if errors:
            raise ValidationError(errors)
        return settings

    def require_api(self) -> None:
        """Raise if the remote service endpoint or token is missing."""
        missing = []
        if not self.api_url:
            missing.append("BULK_API_URL not set")
        if not self.api_token:
            missing.append("BULK_API_TOKEN not set")
        if missing:
            raise ValidationError(missing)
