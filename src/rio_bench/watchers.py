"""Completion watchers.

A watcher subscribes to one storage item and resolves with the first value that
satisfies its predicate. Every watcher is bounded by the same timeout and always
unsubscribes, whether it resolved, timed out or was cancelled.
"""

import asyncio
import logging
from typing import Any, Callable

from rio_bench.chain import ChainClient, StorageItem
from rio_bench.errors import CompletionTimeout

log = logging.getLogger("rio_bench.watchers")

Predicate = Callable[[Any], bool]


def _as_int(value: Any) -> int:
    # Balances and nonces decode as ints; Option<...> may decode to None
    return int(value or 0)


def changed_from(prev: Any) -> Predicate:
    """True once the value differs from the pre-submission snapshot."""
    base = _as_int(prev)
    return lambda value: _as_int(value) != base


def increased_past(prev: Any) -> Predicate:
    """True once the value is strictly greater than the pre-submission snapshot."""
    base = _as_int(prev)
    return lambda value: _as_int(value) > base


async def watch_until(
    chain: ChainClient,
    item: StorageItem,
    predicate: Predicate,
    *,
    timeout: float | None,
) -> Any:
    """Wait until ``item`` takes a value matching ``predicate``.

    ``timeout`` of None or 0 waits forever. Raises CompletionTimeout otherwise.
    """
    done = asyncio.get_running_loop().create_future()

    def on_value(value: Any) -> None:
        if not done.done() and predicate(value):
            done.set_result(value)

    unsubscribe = await chain.subscribe(item, on_value)
    try:
        async with asyncio.timeout(timeout or None):
            return await done
    except TimeoutError as e:
        log.warning("No change on %s after %ss", item, timeout)
        raise CompletionTimeout(str(item), timeout) from e
    finally:
        await unsubscribe()
