from __future__ import annotations

import threading

from upkeep.core.concurrency import run_thread_pool


def test_results_keep_input_order():
    out = run_thread_pool(range(20), lambda x: x * x, workers=4)
    assert [r for r, _ in out] == [x * x for x in range(20)]
    assert all(e is None for _, e in out)


def test_errors_are_collected_per_item():
    def fn(x):
        if x == 2:
            raise ValueError("two")
        return x

    out = run_thread_pool([1, 2, 3], fn, workers=2)
    assert out[0] == (1, None)
    assert out[1][0] is None and isinstance(out[1][1], ValueError)
    assert out[2] == (3, None)


def test_fail_fast_stops_remaining_items():
    ran = []

    def fn(x):
        ran.append(x)
        if x == 0:
            raise RuntimeError("first")
        return x

    stop = threading.Event()
    out = run_thread_pool(range(5), fn, workers=1, fail_fast=True, stop=stop)
    assert stop.is_set()
    assert isinstance(out[0][1], RuntimeError)
    # later items either never started or were cancelled
    assert out[1:] == [(None, None)] * 4
    assert ran == [0]


def test_empty_input():
    assert run_thread_pool([], lambda x: x) == []
