from __future__ import annotations
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from scanner_config import ScannerConfig

LOGGER_NAME = "kiwi_scanner"

TRACE_ID: ContextVar[str] = ContextVar("trace_id", default="")
SYMBOL_ID: ContextVar[str] = ContextVar("symbol_id", default="")


class CompiledPatterns:
    DISCORD_WEBHOOK = re.compile(r'(https://(?:discord|discordapp)\.com/api/webhooks/\d+/)[A-Za-z0-9_\-]+')
    MASTER_KEY = re.compile(r'(X-Master-Key[\'"]?\s*[:=]\s*[\'"]?)[^\s\'",}]+', re.IGNORECASE)
    REDIS_CREDS = re.compile(r'(rediss?://)[^@/\s]+@')


def redact(text: str) -> str:
    text = CompiledPatterns.DISCORD_WEBHOOK.sub(r'\1[REDACTED]', text)
    text = CompiledPatterns.MASTER_KEY.sub(r'\1[REDACTED]', text)
    text = CompiledPatterns.REDIS_CREDS.sub(r'\1[REDACTED]@', text)
    return text


class SecretFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if any(x in msg for x in ("webhooks", "Master-Key", "redis://", "rediss://")):
            record.msg = redact(msg)
            record.args = None
        return True


class TraceContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = TRACE_ID.get()
        record.symbol_id = SYMBOL_ID.get()
        return True


class SafeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "trace_id"):
            record.trace_id = TRACE_ID.get()
        return redact(super().format(record))


def new_trace_id() -> str:
    trace_id = uuid.uuid4().hex[:8]
    TRACE_ID.set(trace_id)
    return trace_id


def setup_logging(cfg: Optional[ScannerConfig] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    for h in logger.handlers[:]:
        logger.removeHandler(h)

    if cfg is None:
        level = logging.INFO
    else:
        level = logging.DEBUG if cfg.DEBUG_MODE else getattr(logging, cfg.LOG_LEVEL, logging.INFO)
    logger.setLevel(level)
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(SafeFormatter(
        fmt='%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s | [%(trace_id)s] | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console.addFilter(SecretFilter())
    console.addFilter(TraceContextFilter())
    logger.addHandler(console)
    logger.debug(f"Logging configured | Level: {logging.getLevelName(level)} | Output: stdout")
    return logger


def debug_if(condition: bool, logger_obj: logging.Logger, msg_fn: Callable[[], str]) -> None:
    if condition and logger_obj.isEnabledFor(logging.DEBUG):
        logger_obj.debug(msg_fn())
