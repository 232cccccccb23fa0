"""Logging setup for the poll service.

Three output formats are supported through ``settings.log_format``:

* ``text``: one plain line per record
* ``structured``: plain lines with the request, user and limit class appended
* ``json``: one JSON object per line, for log shippers

Every handler runs ``ContextFilter`` so formatters can rely on the context
attributes being present.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from xpoll.app.core.config import settings
from xpoll.app.core.context import get_current_request_id

# Attributes the guards and middlewares attach through ``extra=``.
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "client_id",
    "limit_class",
    "path",
    "method",
    "status_code",
    "duration_ms",
)

# Attributes every LogRecord has; anything else on a record came from ``extra=``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}

_PLAIN_LINE = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Known context attributes go to the top level, other ``extra`` attributes
    are grouped under ``"extra"``.
    """

    CONTEXT_FIELDS = list(CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        extra: Dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS:
                continue
            if key in CONTEXT_FIELDS:
                if value is not None and value != "-":
                    payload[key] = value
            else:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Make sure every context attribute exists on the record.

    Unset attributes become None. A missing ``request_id`` is filled from
    the request currently being handled, if any.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, None)
        if record.request_id is None:
            record.request_id = get_current_request_id()
        return True


def _stream_handler(stream: Any, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "stream": stream,
        "level": level,
        "formatter": formatter,
        "filters": ["context"],
    }


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping from the current settings."""
    fmt = str(getattr(settings, "log_format", "text")).lower()
    level = str(getattr(settings, "log_level", "INFO")).upper()

    formatters: Dict[str, Any] = {
        "standard": {"format": _PLAIN_LINE},
        "structured": {
            "format": _PLAIN_LINE
            + " - request_id=%(request_id)s - user_id=%(user_id)s"
            + " - limit_class=%(limit_class)s",
        },
    }
    if fmt == "json":
        formatters["json"] = {"()": f"{__name__}.JSONFormatter"}
        chosen = "json"
    elif fmt == "structured":
        chosen = "structured"
    else:
        chosen = "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": f"{__name__}.ContextFilter"}},
        "formatters": formatters,
        "handlers": {
            "console": _stream_handler(sys.stdout, level, chosen),
            "error_console": _stream_handler(sys.stderr, "ERROR", chosen),
        },
        "loggers": {
            "xpoll": {
                "level": level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {"level": level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Apply the logging configuration. Called once from the app factory."""
    logging.config.dictConfig(get_logging_config())

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = "xpoll") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    client_id: Optional[str] = None,
    limit_class: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Collect non-None context values for a logger's ``extra`` argument.

        logger.warning(
            "Rate limit exceeded",
            extra=get_log_context(client_id="ip:10.0.0.1", limit_class="vote"),
        )
    """
    fields = dict(
        request_id=request_id,
        user_id=user_id,
        client_id=client_id,
        limit_class=limit_class,
        **extra,
    )
    return {key: value for key, value in fields.items() if value is not None}
