"""Structured logging for the proxy.

Every record is emitted as one JSON object (or a plain line when
``LOG_FORMAT=plain``). Two things are guaranteed for each record:

- the request id bound by the middleware is attached, so lines belonging
  to one proxied call can be grouped;
- fields whose name looks like a credential are replaced with
  ``[REDACTED]`` at any nesting depth. The injected upstream key must never
  reach a log sink, whatever header name it travels under.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from cfproxy.core.config import LogSettings

REDACTED = "[REDACTED]"

SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "api_key",
        "cf_api_key",
        "x-api-key",
        "credential",
        "authorization",
        "proxy-authorization",
        "token",
        "secret",
        "password",
        "cookie",
        "set-cookie",
        "headers",
        "body",
    }
)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(request_id: str | None) -> None:
    _request_id.set(request_id)


def get_request_id() -> str | None:
    return _request_id.get()


def clear_request_id() -> None:
    _request_id.set(None)


class _Redactor:
    """Replaces values stored under sensitive names."""

    def __init__(self, keys: Iterable[str] | None = None) -> None:
        self.keys = frozenset(k.lower() for k in (keys or SENSITIVE_KEYS_DEFAULT))

    def hides(self, name: object) -> bool:
        return str(name).lower() in self.keys

    def scrub(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: REDACTED if self.hides(k) else self.scrub(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.scrub(v) for v in value)
        return value

    def extras(self, record: logging.LogRecord) -> dict[str, Any]:
        """Redacted copy of the fields passed through ``extra``."""
        return {
            name: REDACTED if self.hides(name) else self.scrub(value)
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS and not name.startswith("_")
        }


class SensitiveDataFilter(logging.Filter):
    """Scrub sensitive extras on the record and attach the bound request id.

    Runs before any formatter, so plain-text output is covered too.
    """

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self._redactor = _Redactor(sensitive_keys)

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in self._redactor.extras(record).items():
            setattr(record, name, value)
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, *, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self._redactor = _Redactor(sensitive_keys)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self._redactor.extras(record))

        request_id = payload.get("request_id") or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        else:
            payload.pop("request_id", None)

        # Only the type: exception text may echo upstream URLs or headers
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_type"] = record.exc_info[0].__name__

        return json.dumps(payload, default=str)


def _open_handler(cfg: LogSettings) -> logging.Handler:
    if cfg.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    path = Path(cfg.file_path or "logs/cfproxy.log")
    path.parent.mkdir(parents=True, exist_ok=True)
    if cfg.max_bytes:
        return RotatingFileHandler(
            path,
            maxBytes=cfg.max_bytes,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(path, encoding="utf-8")


def configure_logging(
    log_settings: LogSettings | None = None,
    *,
    extra_sensitive_keys: Iterable[str] = (),
) -> None:
    """Install a single redacting handler on the root logger.

    Args:
        log_settings: Log settings; read from the environment if omitted.
        extra_sensitive_keys: More field names to redact, e.g. a custom
            credential header.
    """

    cfg = log_settings or LogSettings()
    keys = SENSITIVE_KEYS_DEFAULT | {k.lower() for k in extra_sensitive_keys}

    handler = _open_handler(cfg)
    handler.addFilter(SensitiveDataFilter(keys))
    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter(sensitive_keys=keys))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # uvicorn loggers go through the root handler only
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
