"""Two-factor observability helpers for metrics and tracing.

Usage:
    ```python
    from twofactor.observability import TwoFactorMetrics, TwoFactorTracing

    with TwoFactorMetrics.operation("start_verification", factor="email"):
        with TwoFactorTracing.span("start_verification", user_id=user_id):
            ...
    ```
"""

from __future__ import annotations

from .metrics import TwoFactorMetrics
from .tracing import TwoFactorTracing

__all__: list[str] = [
    "TwoFactorMetrics",
    "TwoFactorTracing",
]
