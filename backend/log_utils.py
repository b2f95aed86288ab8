"""
Logging utilities for the sync CLI.

Provides a custom LogRecord factory that sanitizes log arguments
to prevent log injection attacks (CWE-117). Provider-supplied values
(stream names, URLs, group titles) could contain newlines or control
characters that forge log entries.

Install once at startup via install_safe_logging(), then call
configure_logging() to attach the stdout handler.
"""

import logging
import sys

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

PROGRESS_FORMAT = "%(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _sanitize_value(value):
    """Strip newlines and carriage returns from a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args to prevent log injection."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log arguments.

    Call once during startup, before any logging occurs.
    """
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO", stream=None) -> logging.Handler:
    """
    Attach a single stdout handler to the root logger.

    INFO and above print bare progress lines; DEBUG adds timestamps and
    logger names. Calling it again replaces the previous handler.
    """
    level_upper = level.upper()
    numeric_level = getattr(logging, level_upper, logging.INFO)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_kptv_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(DEBUG_FORMAT if numeric_level <= logging.DEBUG else PROGRESS_FORMAT))
    handler._kptv_handler = True
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING)
    return handler
