import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Final

from holo_assistant.config.paths import log_dir as default_log_dir
from holo_assistant.core.config import RuntimeConfig, get_config
from holo_assistant.core.trace import get_trace_id

ROOT_LOGGER: Final[str] = "holo_assistant"


class JsonFormatter(logging.Formatter):
    """Serialise log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "category": record.name,
            "message": record.getMessage(),
            "trace_id": get_trace_id() or None,
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


class SizeAndTimeRotatingFileHandler(TimedRotatingFileHandler):
    """Rotate on size as well as on time."""

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 0,
        backup_count: int = 0,
        when: str = "midnight",
        interval: int = 1,
        encoding: str | None = "utf-8",
        delay: bool = False,
        utc: bool = False,
    ) -> None:
        self.maxBytes = max_bytes
        super().__init__(
            str(filename),
            when=when,
            interval=interval,
            backupCount=backup_count,
            encoding=encoding,
            delay=delay,
            utc=utc,
        )

    def shouldRollover(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if self.maxBytes > 0 and self._would_exceed(record):
            return True
        return super().shouldRollover(record)

    def _would_exceed(self, record: logging.LogRecord) -> bool:
        if self.stream is None:  # pragma: no cover
            self.stream = self._open()
        line = f"{self.format(record)}\n".encode(self.encoding or "utf-8", errors="replace")
        return self.stream.tell() + len(line) >= self.maxBytes


def configure_logging(config: RuntimeConfig | None = None) -> logging.Logger:
    """Attach the JSON file handler to the package logger (once)."""
    config = config or get_config()
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(config.log_level.upper())
    if any(isinstance(h, SizeAndTimeRotatingFileHandler) for h in logger.handlers):
        return logger

    directory = Path(config.log_dir) if config.log_dir else default_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    handler = SizeAndTimeRotatingFileHandler(
        directory / f"{ROOT_LOGGER}.jsonl",
        max_bytes=config.log_rotate_mb * 1024 * 1024,
        backup_count=config.log_retention_days,
    )
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger
