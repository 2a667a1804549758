from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def run_thread_pool(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    workers: int = 4,
    fail_fast: bool = False,
    stop: Optional[threading.Event] = None,
) -> List[Tuple[Optional[R], Optional[BaseException]]]:
    """Run `fn` over `items` in a thread pool.

    Returns one (result, error) pair per item, in input order. Items that
    never started because of `fail_fast` or `stop` get (None, None).
    With `fail_fast`, the first error sets `stop` so in-flight work can wind
    down cooperatively and queued work is cancelled.
    """
    items = list(items)
    if not items:
        return []

    stop = stop if stop is not None else threading.Event()
    results: List[Tuple[Optional[R], Optional[BaseException]]] = [(None, None)] * len(items)

    def _guarded(item: T) -> Tuple[bool, Optional[R]]:
        if stop.is_set():
            return False, None
        try:
            return True, fn(item)
        except Exception:
            if fail_fast:
                # set before this worker can pick up the next item
                stop.set()
            raise

    with ThreadPoolExecutor(max_workers=max(1, int(workers))) as ex:
        fut_map = {ex.submit(_guarded, item): idx for idx, item in enumerate(items)}
        for fut in as_completed(fut_map):
            idx = fut_map[fut]
            if fut.cancelled():
                continue
            try:
                started, value = fut.result()
            except Exception as e:
                results[idx] = (None, e)
                if fail_fast:
                    stop.set()
                    for f in fut_map:
                        if not f.done():
                            f.cancel()
                continue
            if started:
                results[idx] = (value, None)

    return results
