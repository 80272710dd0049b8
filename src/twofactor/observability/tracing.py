"""Two-factor tracing helpers for OpenTelemetry.

Usage:
    ```python
    from twofactor.observability import TwoFactorTracing

    with TwoFactorTracing.span("submit_code", user_id=user_id, factor="totp") as span:
        result = await coordinator.submit_code(user_id, session_id, code)
        TwoFactorTracing.set_state(span, result.state.value)
    ```

Without a configured OpenTelemetry SDK the API returns non-recording
spans, so the helpers cost next to nothing.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Generator

_logger = logging.getLogger(__name__)


class _TracerRegistry:
    """Lazy tracer initialization."""

    def __init__(self) -> None:
        self._tracer: Any = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self._tracer = trace.get_tracer("twofactor")
        self._initialized = True

    @property
    def tracer(self) -> Any:
        self._ensure_initialized()
        return self._tracer


_registry = _TracerRegistry()


class TwoFactorTracing:
    """Span helpers around two-factor operations."""

    @staticmethod
    @contextmanager
    def span(
        operation: str,
        *,
        user_id: str | None = None,
        factor: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Any, None, None]:
        """Context manager for a traced two-factor operation.

        Args:
            operation: Operation name; the span is ``twofactor.<operation>``.
            user_id: User the operation is for.
            factor: Factor involved, if any.
            attributes: Additional span attributes.

        Yields:
            The active span.
        """
        tracer = _registry.tracer
        with tracer.start_as_current_span(f"twofactor.{operation}") as span:
            try:
                span.set_attribute("twofactor.operation", operation)
                if user_id is not None:
                    span.set_attribute("twofactor.user_id", user_id)
                if factor is not None:
                    span.set_attribute("twofactor.factor", factor)

                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, str(value))

                yield span

            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise

    @staticmethod
    def set_state(span: Any, state: str) -> None:
        """Record the resulting session state on a span."""
        if span:
            span.set_attribute("twofactor.state", state)


__all__: list[str] = ["TwoFactorTracing"]
