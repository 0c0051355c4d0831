"""
Logging bootstrap for the orchestrator and its CLI.

Log records always go to stderr: the CLI prints its JSON results on stdout and
the two streams must not mix. Only the handler installed here is replaced on
reconfiguration, so handlers added by an embedding application (or pytest's
log capture) survive a `configure()` call.
"""
from __future__ import annotations

import logging
import os
import sys
from typing import IO, Any, Optional

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

PROJECT_LOGGERS = [
    "app",
    "cli",
    "clique",
    "ip_allocator",
    "keys",
    "node_config",
    "orchestrator",
    "rpc",
    "runtime",
    "utils",
]

# urllib3 logs every connection retry while a node is still booting.
THIRD_PARTY_LOGGERS = [
    "urllib3",
    "requests",
    "charset_normalizer",
]

_handler: Optional[logging.Handler] = None


def _coerce_level(level: Optional[Any]) -> int:
    """Translate a human readable level into the logging module's numeric level."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = getattr(logging, level.strip().upper(), None)
        if isinstance(numeric, int):
            return numeric
    env_default = os.environ.get("BESU_LOG_LEVEL", "INFO").strip().upper()
    return getattr(logging, env_default, logging.INFO)


def _setting(logging_settings: Optional[Any], name: str) -> Optional[Any]:
    if logging_settings is None:
        return None
    if isinstance(logging_settings, dict):
        return logging_settings.get(name)
    return getattr(logging_settings, name, None)


def configure(
    logging_settings: Optional[Any] = None,
    *,
    force: bool = True,
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """
    Installs (or replaces) the orchestrator's stderr handler on the root
    logger and sets project and third-party logger levels. Accepts a
    LoggingSettings object or a plain dict. Returns the active handler.
    """
    global _handler
    if _handler is not None and not force:
        return _handler

    level = _coerce_level(_setting(logging_settings, "level"))
    third_party_level = _coerce_level(_setting(logging_settings, "third_party_level") or "WARNING")
    fmt = _setting(logging_settings, "format") or os.environ.get("BESU_LOG_FORMAT", _DEFAULT_FORMAT)
    datefmt = _setting(logging_settings, "datefmt") or os.environ.get("BESU_LOG_DATEFMT", _DEFAULT_DATEFMT)

    root_logger = logging.getLogger()
    root_logger.setLevel(max(logging.WARNING, level))
    if _handler is not None:
        root_logger.removeHandler(_handler)
        _handler.close()

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(fmt, datefmt))
    root_logger.addHandler(handler)
    _handler = handler

    for name in PROJECT_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(max(third_party_level, level))

    logging.captureWarnings(True)
    return handler
