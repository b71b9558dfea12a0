import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from clipscout.main.config import get_loglevel
from clipscout.main.job_context import get_job_context


JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


class ContextJSONFormatter(logging.Formatter):
    """One JSON object per record: base fields, job context, then ``extra``."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting logic
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Job identity of the worker slot that emitted the record
        for key, value in get_job_context().items():
            if value is not None:
                log.setdefault(key, value)

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
        }
        for key, value in extras.items():
            log.setdefault(key, value)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log["stack"] = record.stack_info

        return json.dumps(log, default=str)


# Quiet third-party loggers unless we are debugging
_THIRD_PARTY_LEVEL = logging.INFO if get_loglevel() <= logging.DEBUG else logging.WARNING
for _logger in ("aiohttp", "arq", "asyncio", "redis"):
    logging.getLogger(_logger).setLevel(_THIRD_PARTY_LEVEL)


class SimpleLogger(logging.Logger):
    def __init__(self, name="main", level=logging.WARNING, console=True):
        logging.Logger.__init__(self, name, level)

        if not console:
            return

        if JSON_LOGS_ENABLED:
            handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
            handler.setFormatter(ContextJSONFormatter())
        else:
            # Rich output for local development
            handler = RichHandler(rich_tracebacks=True, markup=True, show_path=True)
        handler.setLevel(level)
        self.addHandler(handler)


def get_logger(module_name: str):
    return SimpleLogger(name=module_name, level=get_loglevel())
