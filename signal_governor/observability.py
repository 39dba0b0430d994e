import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional, Tuple


_CTX: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_SENSITIVE_KEY_EXACT = {
    "authorization",
    "bot_token",
    "cookie",
    "secret",
    "token",
    "x-admin-key",
}

_SENSITIVE_KEY_SUBSTR = (
    "api_key",
    "api-key",
    "authorization",
    "cookie",
    "password",
    "secret",
    "token",
)

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "taskName",
}


def bind_context(**fields: Any) -> None:
    ctx = dict(_CTX.get())
    for key, value in fields.items():
        if value is None:
            ctx.pop(key, None)
        else:
            ctx[key] = value
    _CTX.set(ctx)


def clear_context(*keys: str) -> None:
    if not keys:
        _CTX.set({})
        return
    ctx = dict(_CTX.get())
    for key in keys:
        ctx.pop(key, None)
    _CTX.set(ctx)


def get_context() -> Dict[str, Any]:
    return dict(_CTX.get())


def _is_sensitive_key(key: str) -> bool:
    k = key.lower()
    if k in _SENSITIVE_KEY_EXACT:
        return True
    return any(substr in k for substr in _SENSITIVE_KEY_SUBSTR)


def _redact_obj(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if _is_sensitive_key(str(k)):
                out[str(k)] = "[REDACTED]"
            else:
                out[str(k)] = _redact_obj(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact_obj(v) for v in obj]
    return obj


def _truncate_str(value: str, max_chars: int) -> Tuple[str, bool]:
    if max_chars <= 0 or len(value) <= max_chars:
        return value, False
    return value[:max_chars] + "...[TRUNCATED]", True


def sanitize_json_text(text: str, *, max_chars: Optional[int] = None) -> Tuple[str, bool]:
    max_chars_val = max_chars if max_chars is not None else int(os.getenv("LOG_BODY_MAX_CHARS", "8000"))
    try:
        parsed = json.loads(text)
    except ValueError:
        return _truncate_str(text, max_chars_val)
    rendered = json.dumps(_redact_obj(parsed), ensure_ascii=False, separators=(",", ":"), default=str)
    return _truncate_str(rendered, max_chars_val)


def sanitize_json_bytes(data: bytes, *, max_chars: Optional[int] = None) -> Tuple[str, bool]:
    return sanitize_json_text(data.decode("utf-8", errors="replace"), max_chars=max_chars)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = get_context()
        if ctx:
            payload.update(ctx)

        # Include any explicit structured fields passed via `extra=`.
        for k, v in record.__dict__.items():
            if k in _RESERVED_RECORD_KEYS or k.startswith("_"):
                continue
            payload.setdefault(k, v)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


_CONFIGURED = False


def setup_logging(*, level: str = "INFO") -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    root = logging.getLogger()
    root.handlers = []
    root.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    # httpx logs every request at INFO; our own hooks already cover it.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_service(service: str) -> None:
    bind_context(service=service)


def set_request_id(request_id: str) -> None:
    bind_context(request_id=request_id)
