"""Tests for recovery codes."""

from __future__ import annotations

import asyncio
import itertools
import re

import pytest

from twofactor import (
    ManualClock,
    RecoveryCodeStore,
    RecoveryOutcome,
    TwoFactorConfig,
    TwoFactorServices,
)
from twofactor.recovery import normalize_recovery_code
from twofactor.storage import InMemoryStorage, user_key


@pytest.fixture
def recovery(services: TwoFactorServices) -> RecoveryCodeStore:
    return services.recovery


def test_normalize_recovery_code() -> None:
    assert normalize_recovery_code(" 1234-5678 ") == "12345678"
    assert normalize_recovery_code("1234 5678") == "12345678"


@pytest.mark.asyncio
class TestGenerateSet:
    async def test_generates_eight_unique_codes(
        self, recovery: RecoveryCodeStore
    ) -> None:
        issued = await recovery.generate_set("user-1")

        assert len(issued.codes) == 8
        assert len(set(issued.codes)) == 8
        assert all(re.fullmatch(r"\d{4}-\d{4}", c) for c in issued.codes)
        assert await recovery.remaining_count("user-1") == 8

    async def test_only_slow_hashes_are_stored(
        self, recovery: RecoveryCodeStore, storage: InMemoryStorage
    ) -> None:
        issued = await recovery.generate_set("user-1")
        record = await storage.get(user_key("user-1", "recovery"))

        assert record is not None
        stored = str(record.value)
        for code in issued.codes:
            assert code not in stored
            assert normalize_recovery_code(code) not in stored
        assert "test-fingerprint-key" not in stored
        assert "salt" not in record.value
        hashes = [c["code_hash"] for c in record.value["codes"]]
        assert all(h.startswith("$2b$04$") for h in hashes)

    async def test_argon2id_hashing(
        self, storage: InMemoryStorage, clock: ManualClock
    ) -> None:
        config = TwoFactorConfig.from_mapping(
            {"recovery": {"count": 3, "hash_algorithm": "argon2id"}}
        )
        recovery = RecoveryCodeStore(storage, clock, config)

        issued = await recovery.generate_set("user-1")
        record = await storage.get(user_key("user-1", "recovery"))

        assert record is not None
        hashes = [c["code_hash"] for c in record.value["codes"]]
        assert all(h.startswith("$argon2id$") for h in hashes)
        assert await recovery.consume("user-1", issued.codes[1]) is (
            RecoveryOutcome.SUCCESS
        )

    async def test_custom_count(self, recovery: RecoveryCodeStore) -> None:
        issued = await recovery.generate_set("user-1", count=3)
        assert len(issued.codes) == 3

    async def test_rejects_non_positive_count(
        self, recovery: RecoveryCodeStore
    ) -> None:
        with pytest.raises(ValueError):
            await recovery.generate_set("user-1", count=0)

    async def test_to_text(self, recovery: RecoveryCodeStore) -> None:
        issued = await recovery.generate_set("user-1")
        text = issued.to_text("Acme")

        assert text.startswith("Acme recovery codes")
        assert all(code in text for code in issued.codes)

    async def test_regeneration_invalidates_all_previous_codes(
        self, recovery: RecoveryCodeStore
    ) -> None:
        old = await recovery.generate_set("user-1")
        await recovery.consume("user-1", old.codes[0])

        new = await recovery.generate_set("user-1")

        assert not set(old.codes) & set(new.codes)
        for code in old.codes:
            assert (
                await recovery.consume("user-1", code)
            ) is RecoveryOutcome.INVALID_OR_USED
        assert await recovery.remaining_count("user-1") == 8

    async def test_regeneration_never_reissues_a_retired_code(
        self, recovery: RecoveryCodeStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        old = await recovery.generate_set("user-1", count=2)
        fresh = (f"9999-{n:04d}" for n in itertools.count())
        draws = itertools.chain(old.codes, ["1111-1111"], fresh)
        monkeypatch.setattr(
            "twofactor.recovery.generate_recovery_code", lambda: next(draws)
        )

        new = await recovery.generate_set("user-1", count=2)

        assert new.codes == ("1111-1111", "9999-0000")
        assert await recovery.consume("user-1", old.codes[0]) is (
            RecoveryOutcome.INVALID_OR_USED
        )
        assert await recovery.consume("user-1", "1111-1111") is (
            RecoveryOutcome.SUCCESS
        )

    async def test_codes_verify_under_a_different_fingerprint_key(
        self, storage: InMemoryStorage, clock: ManualClock, config: TwoFactorConfig
    ) -> None:
        issued = await RecoveryCodeStore(storage, clock, config).generate_set("user-1")
        rotated = TwoFactorConfig.from_mapping(
            {"recovery": {"hash_rounds": 4, "fingerprint_key": "rotated-key"}}
        )
        recovery = RecoveryCodeStore(storage, clock, rotated)

        assert await recovery.consume("user-1", issued.codes[0]) is (
            RecoveryOutcome.SUCCESS
        )


@pytest.mark.asyncio
class TestConsume:
    async def test_code_is_single_use(self, recovery: RecoveryCodeStore) -> None:
        issued = await recovery.generate_set("user-1")
        code = issued.codes[2]

        assert await recovery.consume("user-1", code) is RecoveryOutcome.SUCCESS
        assert (
            await recovery.consume("user-1", code)
        ) is RecoveryOutcome.INVALID_OR_USED
        assert await recovery.remaining_count("user-1") == 7

    async def test_hyphen_and_whitespace_optional(
        self, recovery: RecoveryCodeStore
    ) -> None:
        issued = await recovery.generate_set("user-1")
        bare = f"  {normalize_recovery_code(issued.codes[0])} "

        assert await recovery.consume("user-1", bare) is RecoveryOutcome.SUCCESS

    async def test_wrong_and_used_are_indistinguishable(
        self, recovery: RecoveryCodeStore
    ) -> None:
        issued = await recovery.generate_set("user-1")
        await recovery.consume("user-1", issued.codes[0])

        used = await recovery.consume("user-1", issued.codes[0])
        unknown_codes = {f"{n:04d}-0000" for n in range(20)} - set(issued.codes)
        wrong = await recovery.consume("user-1", sorted(unknown_codes)[0])

        assert used is wrong is RecoveryOutcome.INVALID_OR_USED

    async def test_no_codes(self, recovery: RecoveryCodeStore) -> None:
        assert (
            await recovery.consume("user-1", "1234-5678")
        ) is RecoveryOutcome.INVALID_OR_USED
        assert await recovery.consume("user-1", "") is RecoveryOutcome.INVALID_OR_USED

    async def test_concurrent_submissions_exactly_one_wins(
        self, recovery: RecoveryCodeStore
    ) -> None:
        issued = await recovery.generate_set("user-1")
        code = issued.codes[0]

        results = await asyncio.gather(
            *(recovery.consume("user-1", code) for _ in range(6))
        )

        assert results.count(RecoveryOutcome.SUCCESS) == 1
        assert results.count(RecoveryOutcome.INVALID_OR_USED) == 5
        assert await recovery.remaining_count("user-1") == 7


@pytest.mark.asyncio
class TestStatusAndHistory:
    async def test_low_water_mark(self, recovery: RecoveryCodeStore) -> None:
        issued = await recovery.generate_set("user-1")
        for code in issued.codes[:5]:
            await recovery.consume("user-1", code)

        status = await recovery.status("user-1")
        assert status.remaining == 3
        assert status.total == 8
        assert not status.low

        await recovery.consume("user-1", issued.codes[5])
        status = await recovery.status("user-1")
        assert status.remaining == 2
        assert status.low

        # Low is only a signal; remaining codes still work
        assert (
            await recovery.consume("user-1", issued.codes[6])
        ) is RecoveryOutcome.SUCCESS

    async def test_status_without_codes(self, recovery: RecoveryCodeStore) -> None:
        status = await recovery.status("user-1")
        assert (status.remaining, status.total, status.low) == (0, 0, False)

    async def test_usage_history_is_masked_and_ordered(
        self, recovery: RecoveryCodeStore, clock: ManualClock
    ) -> None:
        issued = await recovery.generate_set("user-1")
        await recovery.consume("user-1", issued.codes[0], context="laptop")
        clock.advance(hours=2)
        await recovery.consume("user-1", issued.codes[1], context="phone")

        history = await recovery.usage_history("user-1")

        assert [h.context for h in history] == ["phone", "laptop"]
        assert history[0].masked_code == f"{issued.codes[1][:4]}-****"
        assert issued.codes[1] not in history[0].masked_code
        assert history[0].used_at == clock.now()

    async def test_revoke(self, recovery: RecoveryCodeStore) -> None:
        issued = await recovery.generate_set("user-1")
        await recovery.revoke("user-1")

        assert await recovery.remaining_count("user-1") == 0
        assert (
            await recovery.consume("user-1", issued.codes[0])
        ) is RecoveryOutcome.INVALID_OR_USED

        regenerated = await recovery.generate_set("user-1")
        assert not set(issued.codes) & set(regenerated.codes)
