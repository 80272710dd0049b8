"""Test configuration and fixtures."""

from __future__ import annotations

import base64
from collections.abc import Callable, Iterator
from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from twofactor import (
    FactorAssertion,
    InMemoryMailTransport,
    ManualClock,
    TotpEngine,
    TwoFactorConfig,
    TwoFactorServices,
    build_two_factor,
)
from twofactor.observability import TwoFactorMetrics
from twofactor.storage import InMemoryStorage

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests that require external services",
    )


class RecordingSigner:
    """Assertion signer that remembers what it signed."""

    def __init__(self) -> None:
        self.signed: list[FactorAssertion] = []

    def sign(self, assertion: FactorAssertion) -> str:
        self.signed.append(assertion)
        return f"signed:{assertion.user_id}:{assertion.factor.value}"


@pytest.fixture(autouse=True)
def metrics_registry() -> Iterator[CollectorRegistry]:
    """Isolate Prometheus metrics per test."""
    registry = CollectorRegistry()
    TwoFactorMetrics.use_registry(registry)
    yield registry
    TwoFactorMetrics.use_registry(None)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def storage(clock: ManualClock) -> InMemoryStorage:
    return InMemoryStorage(clock)


@pytest.fixture
def mail() -> InMemoryMailTransport:
    return InMemoryMailTransport()


@pytest.fixture
def config() -> TwoFactorConfig:
    # Minimum bcrypt cost keeps recovery code tests fast
    return TwoFactorConfig.from_mapping(
        {"recovery": {"hash_rounds": 4, "fingerprint_key": "test-fingerprint-key"}}
    )


@pytest.fixture
def signer() -> RecordingSigner:
    return RecordingSigner()


@pytest.fixture
def services(
    storage: InMemoryStorage,
    mail: InMemoryMailTransport,
    config: TwoFactorConfig,
    clock: ManualClock,
    signer: RecordingSigner,
) -> TwoFactorServices:
    return build_two_factor(
        storage,
        mail_transport=mail,
        config=config,
        clock=clock,
        assertion_signer=signer,
    )


@pytest.fixture
def totp_code(clock: ManualClock) -> Callable[..., str]:
    """Return the code an authenticator app shows now (or ``offset_steps`` away)."""

    def compute(secret_base32: str, *, offset_steps: int = 0) -> str:
        secret = base64.b32decode(secret_base32)
        return TotpEngine().compute_code(
            secret, 30, 6, clock.timestamp() + offset_steps * 30
        )

    return compute
