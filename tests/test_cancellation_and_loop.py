from __future__ import annotations

import asyncio
import threading

import pytest

from run_engine.core.cancellation import CancellationToken
from run_engine.core.errors import CancellationObserved
from run_engine.core.loop_controller import LoopController


def test_cancel_is_idempotent_and_keeps_first_reason() -> None:
    token = CancellationToken()
    assert token.is_cancelled() is False
    token.cancel("first")
    token.cancel("second")
    assert token.is_cancelled() is True
    assert token.reason == "first"


def test_raise_if_cancelled_reports_location() -> None:
    token = CancellationToken()
    token.raise_if_cancelled("noop")
    token.cancel("stop")
    with pytest.raises(CancellationObserved) as exc:
        token.raise_if_cancelled("before tool read_file")
    assert exc.value.where == "before tool read_file"
    assert exc.value.reason == "stop"


def test_checker_cancels_and_fails_open() -> None:
    assert CancellationToken(checker=lambda: True).is_cancelled() is True

    def _broken() -> bool:
        raise RuntimeError("checker exploded")

    assert CancellationToken(checker=_broken).is_cancelled() is False


def test_sleep_returns_false_when_not_cancelled() -> None:
    assert asyncio.run(CancellationToken().sleep(0.01)) is False
    assert asyncio.run(CancellationToken().sleep(0)) is False


def test_sleep_is_interrupted_by_cancel_from_another_thread() -> None:
    token = CancellationToken(poll_interval_sec=0.005)
    timer = threading.Timer(0.02, token.cancel, args=("remote stop",))
    timer.start()
    try:
        assert asyncio.run(token.sleep(5)) is True
    finally:
        timer.cancel()
    assert token.reason == "remote stop"


def test_loop_controller_budget() -> None:
    loop = LoopController(max_iterations=2)
    assert loop.iteration == 0 and loop.has_budget()
    assert loop.next_iteration() == 1
    assert loop.has_budget()
    assert loop.next_iteration() == 2
    assert not loop.has_budget()


def test_loop_controller_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError):
        LoopController(max_iterations=0)
