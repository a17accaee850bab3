"""
Logging Configuration for the YubiKey Provisioner.

One root configuration for the whole process: a console handler on
stderr (stdout carries plans and JSON reports), an optional private log
file, text or JSON-lines records, and VERBOSE output that can be
switched off per feature area.

Usage:
    from provisioner.logging_config import setup_logging, get_logger

    setup_logging(verbose=True)

    logger = get_logger('provisioner.engine.transfer')
    logger.action_start("create", target="12345678/openpgp/enc")

SECURITY: secret values must never be passed to a logger. Destructive
operations are logged at the SECURITY level so they are always recorded.
"""

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum, auto
from pathlib import Path
from typing import Optional, Set


class LogLevel(IntEnum):
    """Standard levels plus the provisioner's own."""
    TRACE = 5       # Raw tool output (never contains secrets)
    DEBUG = logging.DEBUG
    VERBOSE = 15    # Per-step operational detail
    INFO = logging.INFO
    NOTICE = 25     # Operator should read this (default PINs, counters low)
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL
    SECURITY = 55   # Destructive hardware operations


for _level in (LogLevel.TRACE, LogLevel.VERBOSE, LogLevel.NOTICE, LogLevel.SECURITY):
    logging.addLevelName(_level, _level.name)


class FeatureArea(Enum):
    """Areas whose VERBOSE output can be switched off."""
    CORE = auto()
    SECRETS = auto()
    INSPECTOR = auto()
    PLANNER = auto()
    LIFECYCLE = auto()
    TRANSFER = auto()
    COORDINATOR = auto()
    ROTATION = auto()
    EXECUTOR = auto()
    ADAPTERS = auto()
    CONFIG = auto()
    CLI = auto()


# Module path segment -> area; checked from the innermost segment out
_AREA_BY_SEGMENT = {area.name.lower(): area for area in FeatureArea}
_AREA_BY_SEGMENT.update({
    'security': FeatureArea.SECRETS,
    'secret_scope': FeatureArea.SECRETS,
    'expiry': FeatureArea.ROTATION,
    'provisionctl': FeatureArea.CLI,
})


def feature_for(logger_name: str) -> FeatureArea:
    for segment in reversed(logger_name.lower().split('.')):
        if segment in _AREA_BY_SEGMENT:
            return _AREA_BY_SEGMENT[segment]
    return FeatureArea.CORE


@dataclass
class _LoggingState:
    json_format: bool = False
    log_file: Optional[str] = None
    enabled_features: Set[FeatureArea] = field(default_factory=lambda: set(FeatureArea))
    lock: threading.RLock = field(default_factory=threading.RLock)


_state = _LoggingState()


class ProvisionerFormatter(logging.Formatter):
    """
    Text lines for people, JSON lines for machines.

    Text: ``12:00:01 INFO     [transfer] moved | target=12345678/openpgp/enc``
    """

    RESET = '\033[0m'
    COLORS = {
        'TRACE': '\033[90m',
        'DEBUG': '\033[36m',
        'VERBOSE': '\033[94m',
        'INFO': '\033[32m',
        'NOTICE': '\033[33m',
        'WARNING': '\033[33;1m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[31;1m',
        'SECURITY': '\033[35;1m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()
        self.json_format = json_format

    @staticmethod
    def source(logger_name: str) -> str:
        """provisioner.engine.transfer -> transfer; urllib3.pool -> urllib3"""
        parts = logger_name.split('.')
        if parts[0] == 'provisioner':
            return parts[-1] if len(parts) > 1 else 'core'
        return parts[0] or 'core'

    def format(self, record: logging.LogRecord) -> str:
        extra = getattr(record, 'extra_data', None) or {}
        exception = self.formatException(record.exc_info) if record.exc_info else None
        when = datetime.fromtimestamp(record.created)

        if self.json_format:
            data = {
                'timestamp': when.isoformat(),
                'level': record.levelname,
                'logger': record.name,
                'feature': self.source(record.name),
                'message': record.getMessage(),
            }
            if extra:
                data['extra'] = extra
            if exception:
                data['exception'] = exception
            return json.dumps(data, default=str)

        level = f"{record.levelname:8}"
        if self.use_colors:
            level = self.COLORS.get(record.levelname, '') + level + self.RESET
        text = f"{when:%H:%M:%S} {level} [{self.source(record.name)}] {record.getMessage()}"
        if extra:
            text += " | " + ", ".join(f"{k}={v}" for k, v in extra.items())
        if exception:
            text += "\n" + exception
        return text


class ProvisionerLogger(logging.Logger):
    """Logger with the provisioner levels and action start/end records."""

    def __init__(self, name: str, level: int = logging.NOTSET):
        super().__init__(name, level)
        self.feature = feature_for(name)

    def trace(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(LogLevel.TRACE):
            self._log(LogLevel.TRACE, msg, args, **kwargs)

    def verbose(self, msg: str, *args, **kwargs):
        """VERBOSE record, dropped when this logger's area is switched off."""
        if self.feature in _state.enabled_features and self.isEnabledFor(LogLevel.VERBOSE):
            self._log(LogLevel.VERBOSE, msg, args, **kwargs)

    def notice(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(LogLevel.NOTICE):
            self._log(LogLevel.NOTICE, msg, args, **kwargs)

    def security(self, msg: str, *args, **kwargs):
        """Destructive operation; logged whatever the configured level."""
        self._log(LogLevel.SECURITY, msg, args, **kwargs)

    def action_start(self, kind: str, **data):
        self.info(f"Action START: {kind}", extra={'extra_data': data})

    def action_end(self, kind: str, outcome: str, **data):
        level = logging.ERROR if outcome == 'failed' else logging.INFO
        self.log(level, f"Action END: {kind} - {outcome.upper()}", extra={'extra_data': data})


logging.setLoggerClass(ProvisionerLogger)


def _private_file_handler(log_file: str) -> logging.FileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Create with 0600 before the handler opens it for append
    os.close(os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600))
    os.chmod(path, 0o600)
    return logging.FileHandler(path)


def setup_logging(
    verbose: bool = False,
    trace: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Replace the root handlers with the provisioner's.

    Args:
        verbose: Enable VERBOSE level
        trace: Enable TRACE level (implies verbose)
        log_file: Also write to this file (created mode 0600)
        console: Write to stderr
        json_format: Use JSON lines
        features: Areas allowed to log at VERBOSE (all by default)
    """
    if trace:
        level = LogLevel.TRACE
    elif verbose:
        level = LogLevel.VERBOSE
    else:
        level = LogLevel.INFO

    handlers = []
    if console:
        handlers.append((logging.StreamHandler(sys.stderr), True))
    if log_file:
        handlers.append((_private_file_handler(log_file), False))

    with _state.lock:
        _state.json_format = json_format
        _state.log_file = log_file
        _state.enabled_features = set(FeatureArea) if features is None else set(features)

        root = logging.getLogger()
        for old in root.handlers[:]:
            root.removeHandler(old)
        root.setLevel(level)
        for handler, colors in handlers:
            handler.setLevel(level)
            handler.setFormatter(ProvisionerFormatter(use_colors=colors, json_format=json_format))
            root.addHandler(handler)


def get_logger(name: str) -> ProvisionerLogger:
    """ProvisionerLogger for a dotted module name."""
    logger = logging.getLogger(name)
    if isinstance(logger, ProvisionerLogger):
        return logger
    # Registered as a plain Logger before this module was imported
    logger = ProvisionerLogger(name)
    logger.parent = logging.getLogger()
    return logger


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').strip().lower() in ('1', 'true', 'yes', 'on')


def configure_from_environment(verbose: bool = False, trace: bool = False) -> None:
    """
    setup_logging() from the environment:

        PROVISIONER_VERBOSE, PROVISIONER_TRACE, PROVISIONER_LOG_JSON,
        PROVISIONER_LOG_NO_CONSOLE   flags (1/true/yes/on)
        PROVISIONER_LOG_FILE         path of the private log file
        PROVISIONER_LOG_DISABLE_FEATURES
                                     comma-separated FeatureArea names
    """
    features = set(FeatureArea)
    unknown = []
    for name in os.environ.get('PROVISIONER_LOG_DISABLE_FEATURES', '').split(','):
        name = name.strip().upper()
        if name in FeatureArea.__members__:
            features.discard(FeatureArea[name])
        elif name:
            unknown.append(name)

    setup_logging(
        verbose=verbose or _env_flag('PROVISIONER_VERBOSE'),
        trace=trace or _env_flag('PROVISIONER_TRACE'),
        log_file=os.environ.get('PROVISIONER_LOG_FILE') or None,
        console=not _env_flag('PROVISIONER_LOG_NO_CONSOLE'),
        json_format=_env_flag('PROVISIONER_LOG_JSON'),
        features=features,
    )
    for name in unknown:
        get_logger(__name__).warning("Unknown log feature: %s", name.lower())


__all__ = [
    'LogLevel',
    'FeatureArea',
    'feature_for',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
    'ProvisionerLogger',
    'ProvisionerFormatter',
]
