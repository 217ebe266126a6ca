from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Union

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

REDACTED = "***"
SECRET_FIELD_NAMES = frozenset(
    {
        "sign",
        "key",
        "pkey",
        "admin_token",
        "adminToken",
        "private_key",
        "gateway_key",
    }
)
# Activation codes are bearer credentials: logs keep a fingerprint only.
ACTIVATION_CODE_FIELDS = frozenset({"activation_code", "code", "vipKeys", "vip_keys"})
_HANDLER_MARKER = "_vipserver_json_handler"

_TRACE_ID: ContextVar[str] = ContextVar("vipserver_trace_id", default="")


def mask_activation_code(code: Any) -> str:
    """``1A2B3C_1m_3045...ab12`` becomes ``1A2B3C_1m_…ab12``."""

    raw = str(code or "").strip()
    if not raw:
        return ""
    head, _, signature = raw.rpartition("_")
    if not head:
        return f"…{raw[-4:]}"
    return f"{head}_…{signature[-4:]}"


def _scrub(key: str, value: Any) -> Any:
    if value in (None, ""):
        return value
    if key in SECRET_FIELD_NAMES:
        return REDACTED
    if key in ACTIVATION_CODE_FIELDS:
        if isinstance(value, (list, tuple)):
            return [mask_activation_code(item) for item in value]
        if isinstance(value, str):
            return mask_activation_code(value)
    return redact(value)


def redact(value: Any) -> Any:
    """Mask secret-bearing entries of mappings (recursively)."""

    if isinstance(value, dict):
        return {str(k): _scrub(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_safe(item) for item in value]
    return str(value)


def current_trace_id() -> str:
    return _TRACE_ID.get()


@contextmanager
def trace_context(trace_id: str) -> Iterator[str]:
    """Bind ``trace_id`` to every event logged inside the block, worker threads included."""

    token = _TRACE_ID.set(str(trace_id or ""))
    try:
        yield trace_id
    finally:
        _TRACE_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_RECORD_ATTRS and not k.startswith("_")}
        payload.update(_to_json_safe(redact(extras)))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_json_logging(*, level: Union[int, str] = logging.INFO) -> None:
    resolved = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    root.handlers.clear()
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_event(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    trace_id = current_trace_id()
    if trace_id and "trace_id" not in fields:
        fields["trace_id"] = trace_id
    logger.log(level, message, extra={k: _to_json_safe(v) for k, v in redact(fields).items()})
