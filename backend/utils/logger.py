import json
import logging
import sys
from functools import partialmethod
from pathlib import Path
from typing import Any, Optional

from utils.utcnow import utcnow

# Context keys whose values must never reach a log sink verbatim.
_SECRET_KEYS = frozenset({"secret", "api_key", "apikey", "token", "authorization"})


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Render a credential as ``abcd…`` so logs can tell keys apart safely."""
    if not value:
        return ""
    text = str(value)
    if len(text) <= visible:
        return "*" * len(text)
    return f"{text[:visible]}…"


class SecretRedactionFilter(logging.Filter):
    """Masks credential-looking context fields before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, "extra_data", None)
        if fields:
            record.extra_data = {
                key: mask_secret(str(value)) if key.lower() in _SECRET_KEYS and value is not None else value
                for key, value in fields.items()
            }
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields go under ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": f"{utcnow().isoformat()}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        fields = getattr(record, "extra_data", None)
        if fields:
            entry["data"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Console-friendly ``message | key=value`` lines."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_data", None)
        if not fields:
            return line
        return line + " | " + " ".join(f"{key}={value}" for key, value in fields.items())


class ContextLogger:
    """Structured logger: keyword arguments become context fields.

    ``logger.info("Wallet scored", address=a, smart_score=s)``
    """

    def __init__(self, name: str, context: Optional[dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._context: dict[str, Any] = dict(context or {})

    def with_context(self, **fields: Any) -> "ContextLogger":
        return ContextLogger(self.logger.name, {**self._context, **fields})

    def _log(self, level: int, msg: str, *args: Any, exc_info: Any = None, stacklevel: int = 2, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        data = {**self._context, **fields}
        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            stacklevel=stacklevel,  # report the caller, not this wrapper
            extra={"extra_data": data or None},
        )

    debug = partialmethod(_log, logging.DEBUG)
    info = partialmethod(_log, logging.INFO)
    warning = partialmethod(_log, logging.WARNING)
    error = partialmethod(_log, logging.ERROR)

    def exception(self, msg: str, *args: Any, **fields: Any) -> None:
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, stacklevel=3, **fields)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """Route everything through the root logger with redaction applied."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = []

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    handlers[0].setFormatter(JSONFormatter() if json_format else KeyValueFormatter())
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    redaction = SecretRedactionFilter()
    for handler in handlers:
        handler.addFilter(redaction)
        root.addHandler(handler)

    # httpx logs full request URLs, and the holders endpoint carries its key
    # as a query parameter.
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)
