from __future__ import annotations

import threading
import time

import allure
import pytest

from agent_supervisor.orchestrator.limiter import ConcurrencyLimiter

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Concurrency Limiter"),
]


@pytest.mark.parametrize("value", [0, -1, 1.5, True, "3"])
def test_rejects_invalid_limits(value) -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        ConcurrencyLimiter(value)


def test_run_releases_slot_when_function_raises() -> None:
    limiter = ConcurrencyLimiter(1)

    def _boom() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        limiter.run(_boom)

    assert limiter.active_count == 0
    assert limiter.run(lambda value: value * 2, 21) == 42


def test_release_without_acquire_is_an_error() -> None:
    limiter = ConcurrencyLimiter(2)

    with pytest.raises(RuntimeError, match="without a matching acquire"):
        limiter.release()


def test_never_exceeds_limit_under_contention() -> None:
    limiter = ConcurrencyLimiter(3)
    lock = threading.Lock()
    current = 0
    peak = 0

    def _work() -> None:
        nonlocal current, peak
        with lock:
            current += 1
            peak = max(peak, current)
        time.sleep(0.005)
        with lock:
            current -= 1

    threads = [threading.Thread(target=limiter.run, args=(_work,)) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert peak <= 3
    assert limiter.active_count == 0
    assert limiter.queued_count == 0


def test_waiters_are_served_in_arrival_order() -> None:
    limiter = ConcurrencyLimiter(1)
    limiter.acquire()
    order: list[int] = []

    def _waiter(index: int) -> None:
        with limiter.slot():
            order.append(index)

    threads: list[threading.Thread] = []
    for index in range(5):
        thread = threading.Thread(target=_waiter, args=(index,))
        thread.start()
        threads.append(thread)
        deadline = time.monotonic() + 5
        while limiter.queued_count < index + 1 and time.monotonic() < deadline:
            time.sleep(0.001)

    assert limiter.queued_count == 5
    limiter.release()
    for thread in threads:
        thread.join(timeout=10)

    assert order == [0, 1, 2, 3, 4]
    assert limiter.active_count == 0
