"""
Error Handling Utilities for the YubiKey Provisioner

Every engine exception carries an ErrorCategory. The helpers here turn a
category into a severity, a log line and a recovery suggestion, keep a
per-run record of handled errors, and retry flaky reads.

Observation errors (token unplugged, scdaemon still holding the card)
are the only ones worth retrying. A write that failed halfway must
never be repeated blindly, so retries belong on read-only calls.

USAGE:
    from provisioner.utils.error_handling import handle_error, with_error_handling

    @with_error_handling(category=ErrorCategory.OBSERVATION, retry_count=2,
                         retry_exceptions=(ToolError,), reraise=True)
    def reassociate(serial):
        ...

    try:
        transfer(...)
    except ProvisioningError as e:
        handle_error(e, "transfer", additional_context={'serial': serial})
"""

import functools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Tool output is logged at most this many trailing lines
OUTPUT_TAIL_LINES = 5


class ErrorCategory(Enum):
    """Categories of errors for handling and reporting."""
    # State could not be read (token absent, tool missing)
    OBSERVATION = "observation"

    # An external tool ran and failed
    TOOL = "tool"

    # Caller must decide differently (no stub, wrong PIN, counter at 1)
    PRECONDITION = "precondition"

    # Post-action state mismatch; halts the action queue
    CONSISTENCY = "consistency"

    # Settings or descriptor problems
    CONFIG = "configuration"

    # Local files (recipient list, revocation store, lock file)
    FILESYSTEM = "filesystem"

    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


_SEVERITY_BY_CATEGORY = {
    ErrorCategory.CONSISTENCY: ErrorSeverity.CRITICAL,
    ErrorCategory.PRECONDITION: ErrorSeverity.WARNING,
    ErrorCategory.OBSERVATION: ErrorSeverity.WARNING,
}

_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.FATAL: logging.CRITICAL,
}


@dataclass
class ErrorContext:
    """
    A handled error and where it happened.

    Holds identifiers only (serials, key ids, slot names). Tool output is
    kept for diagnosis; the tools never echo the secrets fed to them on
    stdin.
    """
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    serial: Optional[str] = None
    tool_output: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.serial is None:
            self.serial = getattr(self.error, 'serial', None)
        if not self.tool_output:
            self.tool_output = getattr(self.error, 'output', '') or ''

    @property
    def key(self) -> Tuple[str, str, str, Optional[str]]:
        """Identity used for deduplication."""
        return (self.category.value, type(self.error).__name__, self.operation, self.serial)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'serial': self.serial,
            'timestamp': self.timestamp.isoformat(),
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        where = f" on {self.serial}" if self.serial else ""
        lines = [f"{self.operation}{where} failed ({self.category.value}): "
                 f"{type(self.error).__name__}: {self.error}"]
        for key, value in self.additional_context.items():
            if key != 'serial':
                lines.append(f"  {key}: {value}")
        if self.tool_output.strip():
            tail = self.tool_output.strip().splitlines()[-OUTPUT_TAIL_LINES:]
            lines.append("  tool output:")
            lines.extend(f"    {line}" for line in tail)
        return '\n'.join(lines)


class ErrorAggregator:
    """
    Handled errors of one run.

    The same error for the same operation and token inside the dedup
    window is counted, not stored again.
    """

    def __init__(self, max_errors: int = 500, dedup_window_seconds: int = 60):
        self._errors: List[ErrorContext] = []
        self._counts: Counter = Counter()
        self._last_seen: Dict[Tuple, float] = {}
        self._max_errors = max_errors
        self._dedup_window = dedup_window_seconds

    def add_error(self, context: ErrorContext) -> bool:
        """Record an error. False if it repeats one inside the dedup window."""
        now = time.monotonic()
        key = context.key
        self._counts[key] += 1
        last = self._last_seen.get(key)
        if last is not None and now - last < self._dedup_window:
            return False

        self._last_seen[key] = now
        self._errors.append(context)
        del self._errors[:-self._max_errors]
        return True

    def get_error_summary(self) -> Dict[str, Any]:
        by_category = Counter(ctx.category.value for ctx in self._errors)
        by_severity = Counter(ctx.severity.value for ctx in self._errors)
        return {
            'total_errors': len(self._errors),
            'by_category': dict(by_category),
            'by_severity': dict(by_severity),
            'repeats': sum(n - 1 for n in self._counts.values()),
        }

    def get_recent_errors(self, count: int = 10) -> List[Dict[str, Any]]:
        return [ctx.to_dict() for ctx in self._errors[-count:]]

    def clear(self) -> None:
        self._errors.clear()
        self._counts.clear()
        self._last_seen.clear()


_run_errors = ErrorAggregator()


def get_error_aggregator() -> ErrorAggregator:
    """Errors handled since the process started (or the last clear())."""
    return _run_errors


def categorize(error: Exception) -> ErrorCategory:
    """Category of an error; engine exceptions carry their own."""
    category = getattr(error, 'category', None)
    if isinstance(category, ErrorCategory):
        return category
    if isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return ErrorCategory.FILESYSTEM
    return ErrorCategory.UNKNOWN


def determine_severity(error: BaseException, category: ErrorCategory) -> ErrorSeverity:
    if isinstance(error, (SystemExit, KeyboardInterrupt)):
        return ErrorSeverity.FATAL
    return _SEVERITY_BY_CATEGORY.get(category, ErrorSeverity.ERROR)


def handle_error(
    error: Exception,
    operation: str,
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Log and record an error.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed (action kind, command)
        category: Overrides the exception's own category
        severity: Overrides the severity derived from the category
        additional_context: Identifiers describing where it happened
        reraise: Re-raise after recording

    Returns:
        The recorded ErrorContext
    """
    category = category or categorize(error)
    context = ErrorContext(
        error=error,
        category=category,
        severity=severity or determine_severity(error, category),
        operation=operation,
        serial=(additional_context or {}).get('serial'),
        additional_context=dict(additional_context or {}),
    )

    level = _LOG_LEVELS[context.severity]
    if _run_errors.add_error(context):
        logger.log(level, context.format_log_message(),
                   exc_info=category is ErrorCategory.UNKNOWN)
    else:
        logger.log(level, f"(repeated) {operation}: {type(error).__name__}: {error}")

    if reraise:
        raise error
    return context


def with_error_handling(
    category: Optional[ErrorCategory] = None,
    operation: Optional[str] = None,
    default_return: Any = None,
    reraise: bool = False,
    retry_count: int = 0,
    retry_delay: float = 1.0,
    retry_backoff: float = 2.0,
    retry_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator that records failures and optionally retries.

    Args:
        category: Category recorded for failures of this function
        operation: Operation name (defaults to the function name)
        default_return: Returned after the last failed attempt unless reraise
        reraise: Re-raise the last error instead of returning default_return
        retry_count: Extra attempts after the first
        retry_delay: Seconds before the first retry
        retry_backoff: Delay multiplier per retry
        retry_exceptions: Exception types worth retrying (default: all)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = operation or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = retry_delay
            attempts = retry_count + 1
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    retryable = retry_exceptions is None or isinstance(e, retry_exceptions)
                    again = retryable and attempt < attempts
                    handle_error(e, name, category=category,
                                 additional_context={'attempt': f"{attempt}/{attempts}"})
                    if not again:
                        if reraise:
                            raise
                        return default_return
                    logger.info(f"Retrying {name} in {delay:.1f}s")
                    time.sleep(delay)
                    delay *= retry_backoff
            return default_return

        return wrapper
    return decorator


class ErrorRecoveryAction(Enum):
    """What the caller should do next."""
    RETRY = "retry"             # Observation failed; reinsert the token or install the tool
    ASK_CALLER = "ask_caller"   # Needs a different decision (other token, regenerate)
    HALT = "halt"               # Stop the queue; a human reviews the token state
    ABORT = "abort"             # Stop this operation


_RECOVERY_BY_CATEGORY = {
    ErrorCategory.OBSERVATION: ErrorRecoveryAction.RETRY,
    ErrorCategory.PRECONDITION: ErrorRecoveryAction.ASK_CALLER,
    ErrorCategory.CONSISTENCY: ErrorRecoveryAction.HALT,
}


def suggest_recovery_action(error: Exception) -> ErrorRecoveryAction:
    action = _RECOVERY_BY_CATEGORY.get(categorize(error))
    if action is not None:
        return action
    if 'timed out' in str(error).lower() or 'timeout' in str(error).lower():
        return ErrorRecoveryAction.RETRY
    return ErrorRecoveryAction.ABORT


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'ErrorRecoveryAction',
    'get_error_aggregator',
    'categorize',
    'determine_severity',
    'handle_error',
    'with_error_handling',
    'suggest_recovery_action',
]
