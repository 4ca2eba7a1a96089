from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable

LOGGER_NAMESPACE = "hsm_mtls"
DEFAULT_LOG_FILE = "logs/hsm-mtls.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5
DEFAULT_SECRET_ENV_VARS = ("HSM_USER_PIN",)
REDACTED = "[REDACTED]"


def _parse_non_negative_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = logging.getLevelName(normalized)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


class SecretRedactionFilter(logging.Filter):
    """
    Replace the values of secret environment variables in rendered records.

    The package never logs the operator PIN; this filter covers third-party
    loggers that share the handler and might echo it back in an error string.
    """

    def __init__(self, env_vars: Iterable[str]) -> None:
        super().__init__()
        self._env_vars = tuple(env_vars)

    def _secrets(self) -> list[str]:
        return [value for value in (os.environ.get(name) for name in self._env_vars) if value]

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = self._secrets()
        if not secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    secret_env_vars: Iterable[str] = DEFAULT_SECRET_ENV_VARS,
) -> logging.Logger:
    """
    Attach a rotating file handler to the hsm_mtls logger namespace.

    Arguments win over environment variables:
    - HSM_MTLS_LOG_FILE
    - HSM_MTLS_LOG_LEVEL
    - HSM_MTLS_LOG_MAX_BYTES
    - HSM_MTLS_LOG_BACKUP_COUNT

    Calling it again with the same file only updates the level.
    """

    path = Path(str(log_file or os.environ.get("HSM_MTLS_LOG_FILE", DEFAULT_LOG_FILE)))
    numeric_level = _resolve_level(
        level if level is not None else os.environ.get("HSM_MTLS_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    )
    if max_bytes is None:
        max_bytes = _parse_non_negative_int(
            os.environ.get("HSM_MTLS_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
            "HSM_MTLS_LOG_MAX_BYTES",
        )
    if backup_count is None:
        backup_count = _parse_non_negative_int(
            os.environ.get("HSM_MTLS_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)),
            "HSM_MTLS_LOG_BACKUP_COUNT",
        )
    if max_bytes < 0 or backup_count < 0:
        raise ValueError("max_bytes and backup_count must be >= 0.")

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False

    resolved_path = path.resolve()
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == resolved_path
        ):
            existing.setLevel(numeric_level)
            return logger

    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(numeric_level)
    handler.addFilter(SecretRedactionFilter(secret_env_vars))
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    logger.addHandler(handler)

    logger.info(
        "Logging to %s (level=%s, max_bytes=%d, backup_count=%d)",
        path,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
    )
    return logger
