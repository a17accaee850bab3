"""
Tests for the error handling utilities.
"""

import pytest

from provisioner.errors import (
    ConfigError,
    NoLocalMaterial,
    PostconditionFailed,
    TokenNotPresent,
    ToolError,
)
from provisioner.utils.error_handling import (
    ErrorAggregator,
    ErrorCategory,
    ErrorContext,
    ErrorRecoveryAction,
    ErrorSeverity,
    categorize,
    determine_severity,
    handle_error,
    suggest_recovery_action,
    with_error_handling,
)


class TestCategorize:
    def test_engine_errors_carry_category(self):
        assert categorize(TokenNotPresent("gone", "123")) is ErrorCategory.OBSERVATION
        assert categorize(NoLocalMaterial("none")) is ErrorCategory.PRECONDITION
        assert categorize(PostconditionFailed("diff")) is ErrorCategory.CONSISTENCY
        assert categorize(ToolError("gpg failed")) is ErrorCategory.TOOL
        assert categorize(ConfigError("bad")) is ErrorCategory.CONFIG

    def test_filesystem_errors(self):
        assert categorize(PermissionError("denied")) is ErrorCategory.FILESYSTEM

    def test_unknown(self):
        assert categorize(ValueError("x")) is ErrorCategory.UNKNOWN

    def test_severity(self):
        assert determine_severity(PostconditionFailed("x"), ErrorCategory.CONSISTENCY) \
            is ErrorSeverity.CRITICAL
        assert determine_severity(KeyboardInterrupt(), ErrorCategory.UNKNOWN) \
            is ErrorSeverity.FATAL

    def test_recovery_suggestion(self):
        assert suggest_recovery_action(TokenNotPresent("gone")) is ErrorRecoveryAction.RETRY
        assert suggest_recovery_action(NoLocalMaterial("x")) is ErrorRecoveryAction.ASK_CALLER
        assert suggest_recovery_action(PostconditionFailed("x")) is ErrorRecoveryAction.HALT


class TestHandleError:
    def test_returns_context(self):
        context = handle_error(ToolError("ykman failed", "12345678"), "transfer",
                               additional_context={'serial': "12345678"})
        assert context.category is ErrorCategory.TOOL
        assert context.to_dict()['operation'] == "transfer"

    def test_reraise(self):
        with pytest.raises(ConfigError):
            handle_error(ConfigError("bad descriptor"), "load", reraise=True)


class TestAggregator:
    def test_deduplicates_within_window(self):
        aggregator = ErrorAggregator(dedup_window_seconds=60)
        error = ToolError("gpg failed")
        first = ErrorContext(error=error, category=ErrorCategory.TOOL,
                             severity=ErrorSeverity.ERROR, operation="listing")
        second = ErrorContext(error=error, category=ErrorCategory.TOOL,
                              severity=ErrorSeverity.ERROR, operation="listing")
        assert aggregator.add_error(first)
        assert not aggregator.add_error(second)
        summary = aggregator.get_error_summary()
        assert summary['total_errors'] == 1
        assert summary['by_category'] == {'tool': 1}

    def test_clear(self):
        aggregator = ErrorAggregator()
        aggregator.add_error(ErrorContext(error=ValueError("x"), category=ErrorCategory.UNKNOWN,
                                          severity=ErrorSeverity.ERROR, operation="op"))
        aggregator.clear()
        assert aggregator.get_recent_errors() == []


class TestWithErrorHandling:
    def test_retries_then_succeeds(self):
        calls = []

        @with_error_handling(retry_count=2, retry_delay=0, retry_exceptions=(ToolError,))
        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ToolError("card busy")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 2

    def test_non_retryable_reraised(self):
        calls = []

        @with_error_handling(retry_count=3, retry_delay=0, retry_exceptions=(ToolError,),
                             reraise=True)
        def broken():
            calls.append(1)
            raise ConfigError("bad")

        with pytest.raises(ConfigError):
            broken()
        assert len(calls) == 1

    def test_default_return(self):
        @with_error_handling(default_return=[])
        def broken():
            raise ToolError("no")

        assert broken() == []
