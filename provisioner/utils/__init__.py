"""
Utility modules for the YubiKey Provisioner.

Provides:
- Error handling with categorized, secret-free logging
- Retry decorator for observation reads
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    ErrorRecoveryAction,
    get_error_aggregator,
    categorize,
    determine_severity,
    handle_error,
    with_error_handling,
    suggest_recovery_action,
)

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
