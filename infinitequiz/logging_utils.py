import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context var to carry a request id through the request lifecycle
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Structured fields callers pass through logger.extra
_EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "client",
    "user_agent",
    "room",
    "player_id",
    "category",
    "difficulty",
    "count",
    "score",
    "time_taken",
    "remaining",
    "ws_count",
    "evicted",
    "url",
    "error",
    "errors",
)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in _EXTRA_FIELDS:
        val = getattr(record, key, None)
        if val is not None:
            out[key] = val
    return out


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly formatter for local development."""

    RESET = "\033[0m"
    GREY = "\033[90m"
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _c(self, text: str, color: str) -> str:
        if not self.use_color or not color:
            return text
        return f"{color}{text}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        extras = _extras(record)
        parts: List[str] = [
            self._c(record.levelname, self.LEVEL_COLORS.get(record.levelname, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._c(f"rid={rid}", "\033[35m"))
        parts.append(self._c(record.name, "\033[34m"))

        method = extras.pop("method", None)
        path = extras.pop("path", None)
        status = extras.pop("status", None)
        duration = extras.pop("duration_ms", None)
        if method or path:
            line = " ".join(str(p) for p in (method, path, status) if p is not None)
            if duration is not None:
                line += f" {duration}ms"
            parts.append(line)
        elif status is not None:
            extras["status"] = status

        parts.extend(["-", record.getMessage()])
        if extras:
            ctx = " ".join(f"{k}={v}" for k, v in extras.items())
            parts.append(self._c(f"[{ctx}]", self.GREY))
        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root and uvicorn loggers.

    LOG_FORMAT=pretty|json picks the formatter; unset means pretty on a TTY
    and JSON otherwise. LOG_COLOR=0 turns off ANSI colours in pretty mode.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    use_pretty = fmt_env == "pretty" or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=use_color) if use_pretty else JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "infinitequiz") -> logging.Logger:
    return logging.getLogger(name)
