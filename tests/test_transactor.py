"""Retry / timeout behaviour of the Transactor."""

import asyncio

import pytest

from ridedispatch.domain.errors import (
    PreconditionFailed,
    TransientStoreFailure,
    WriteConflict,
)
from ridedispatch.services.transactor import Transactor


class ScriptedStore:
    """``attempt`` raises the scripted outcomes in order, then runs *work*."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.attempts = 0

    async def attempt(self, work):
        self.attempts += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome == "slow":
                await asyncio.sleep(1)
            else:
                raise outcome
        return await work(None)


async def _work(tx):
    return "committed"


def _transactor(store, **overrides) -> Transactor:
    options = dict(
        timeout_seconds=0.05,
        max_retries=3,
        backoff_base_seconds=0.001,
        backoff_max_seconds=0.002,
    )
    options.update(overrides)
    return Transactor(store, **options)


@pytest.mark.asyncio
async def test_first_attempt_succeeds():
    store = ScriptedStore()
    assert await _transactor(store).run(_work) == "committed"
    assert store.attempts == 1


@pytest.mark.asyncio
async def test_conflicts_are_retried():
    store = ScriptedStore(WriteConflict("x"), WriteConflict("y"))
    assert await _transactor(store).run(_work) == "committed"
    assert store.attempts == 3


@pytest.mark.asyncio
async def test_timeout_is_retried():
    store = ScriptedStore("slow")
    assert await _transactor(store).run(_work) == "committed"
    assert store.attempts == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transient_failure():
    store = ScriptedStore(*[WriteConflict("x")] * 4)
    with pytest.raises(TransientStoreFailure, match="after 4 attempts"):
        await _transactor(store).run(_work)
    assert store.attempts == 4


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried():
    store = ScriptedStore(PreconditionFailed("gone"))
    with pytest.raises(PreconditionFailed):
        await _transactor(store).run(_work)
    assert store.attempts == 1


def test_backoff_is_capped():
    t = _transactor(ScriptedStore(), backoff_base_seconds=0.1, backoff_max_seconds=0.3)
    for attempt in range(10):
        assert 0 <= t.backoff(attempt) <= 0.3
