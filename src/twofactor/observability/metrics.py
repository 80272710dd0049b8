"""Two-factor metrics helpers for Prometheus.

Usage:
    ```python
    from twofactor.observability import TwoFactorMetrics

    # Use context manager for timing
    with TwoFactorMetrics.operation("submit_code", factor="totp"):
        result = await coordinator.submit_code(user_id, session_id, code)

    # Record attempts directly
    TwoFactorMetrics.record_attempt(attempt)
    ```
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

_logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Generator

    from prometheus_client import CollectorRegistry

    from ..audit.events import VerificationAttempt


class _TwoFactorMetricsRegistry:
    """Registry for two-factor Prometheus metrics.

    Lazily creates the metrics on first use so importing the package
    never touches the collector registry.
    """

    def __init__(self) -> None:
        self._collector_registry: CollectorRegistry | None = None
        self._histogram: Any = None
        self._counter: Any = None
        self._attempts: Any = None
        self._lockouts: Any = None
        self._initialized = False

    def bind(self, collector_registry: CollectorRegistry | None) -> None:
        """Register future metrics in ``collector_registry`` (None for the default)."""
        self._collector_registry = collector_registry
        self._histogram = None
        self._counter = None
        self._attempts = None
        self._lockouts = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        from prometheus_client import REGISTRY, Counter, Histogram

        registry = self._collector_registry or REGISTRY
        self._histogram = Histogram(
            "twofactor_operation_duration_seconds",
            "Two-factor operation duration",
            ["operation", "factor"],
            registry=registry,
        )
        self._counter = Counter(
            "twofactor_operations_total",
            "Two-factor operation count",
            ["operation", "factor", "result"],
            registry=registry,
        )
        self._attempts = Counter(
            "twofactor_verification_attempts_total",
            "Verification attempts by factor and outcome",
            ["factor", "outcome"],
            registry=registry,
        )
        self._lockouts = Counter(
            "twofactor_account_lockouts_total",
            "Account lockouts triggered by the failure budget",
            registry=registry,
        )
        self._initialized = True

    @property
    def histogram(self) -> Any:
        self._ensure_initialized()
        return self._histogram

    @property
    def counter(self) -> Any:
        self._ensure_initialized()
        return self._counter

    @property
    def attempts(self) -> Any:
        self._ensure_initialized()
        return self._attempts

    @property
    def lockouts(self) -> Any:
        self._ensure_initialized()
        return self._lockouts


# Global registry instance
_registry = _TwoFactorMetricsRegistry()


class TwoFactorMetrics:
    """Metrics helpers for two-factor operations.

    Metric failures are logged at debug level and never interrupt a
    verification.
    """

    @staticmethod
    def use_registry(collector_registry: CollectorRegistry | None) -> None:
        """Send metrics to a specific ``CollectorRegistry``.

        Args:
            collector_registry: Target registry, or None for the global one.
        """
        _registry.bind(collector_registry)

    @staticmethod
    @contextmanager
    def operation(
        operation: str,
        *,
        factor: str = "none",
    ) -> Generator[None, None, None]:
        """Context manager for timing a two-factor operation.

        Args:
            operation: Operation name (start_verification, submit_code, ...).
            factor: Factor involved, if any.

        Yields:
            Nothing.
        """
        result = "success"
        start = time.monotonic()

        try:
            yield
        except Exception:
            result = "error"
            raise
        finally:
            duration = time.monotonic() - start

            try:
                _registry.histogram.labels(
                    operation=operation,
                    factor=factor,
                ).observe(duration)
                _registry.counter.labels(
                    operation=operation,
                    factor=factor,
                    result=result,
                ).inc()
            except Exception:
                _logger.debug("Failed to record operation metrics")

    @staticmethod
    def record_attempt(attempt: VerificationAttempt) -> None:
        """Count a verification attempt.

        Args:
            attempt: The recorded attempt.
        """
        try:
            _registry.attempts.labels(
                factor=attempt.factor.value,
                outcome=attempt.outcome.value,
            ).inc()
        except Exception:
            _logger.debug("Failed to record attempt metric")

    @staticmethod
    def record_lockout() -> None:
        try:
            _registry.lockouts.inc()
        except Exception:
            _logger.debug("Failed to record lockout metric")


__all__: list[str] = ["TwoFactorMetrics"]
