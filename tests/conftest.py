"""
Pytest configuration and shared fixtures for rio-bench tests.

This module provides:
- FakeKeypair: a signer stand-in so driver tests do not pay for sr25519
- FakeChain: an in-memory chain implementing the ChainClient protocol, with
  per-call effect delays, dropped, rejected and unanswered extrinsics, and an
  ordered event log
- bench_config: the packaged config shrunk for fast runs
"""

import asyncio
import itertools
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

import pytest

from rio_bench.chain import Call, StorageItem
from rio_bench.config import load_config
from rio_bench.errors import SubmissionError, SubmissionUncertain


@dataclass(frozen=True)
class FakeKeypair:
    uri: str

    @property
    def ss58_address(self) -> str:
        return f"addr{self.uri}"


def call_target(call: Call) -> str | None:
    """Account credited by a call, if any."""
    return call.params.get("dest") or call.params.get("to")


class FakeChain:
    """Chain stand-in. Storage changes are pushed to subscribers like a node would."""

    def __init__(
        self,
        *,
        effect_delay: Callable[[Call, str], float] | float = 0.0,
        drop: Callable[[Call, str], bool] | None = None,
        reject: Callable[[Call, str], bool] | None = None,
        unanswered: Callable[[Call, str], bool] | None = None,
    ):
        self.storage: dict[tuple, Any] = {}
        self.subscribers: dict[tuple, dict[int, Callable]] = defaultdict(dict)
        self.submitted: list[tuple[Call, str, int | None]] = []
        self.events: list[tuple[str, str, str]] = []
        self.open_subscriptions = 0
        self.max_open_subscriptions = 0
        self.closed = False
        self._delay = effect_delay if callable(effect_delay) else (lambda call, signer: effect_delay)
        self._drop = drop or (lambda call, signer: False)
        self._reject = reject or (lambda call, signer: False)
        self._unanswered = unanswered or (lambda call, signer: False)
        self._sub_ids = itertools.count()

    @staticmethod
    def key(item: StorageItem) -> tuple:
        return item.module, item.function, tuple(item.params)

    def get(self, module: str, function: str, *params) -> Any:
        return self.storage.get((module, function, params), 0)

    def set(self, module: str, function: str, params: tuple, value: Any) -> None:
        key = (module, function, tuple(params))
        self.storage[key] = value
        for cb in list(self.subscribers[key].values()):
            cb(value)

    def nonce(self, address: str) -> int:
        return self.get("System", "AccountNonce", address)

    async def query(self, item: StorageItem) -> Any:
        await asyncio.sleep(0)
        return self.storage.get(self.key(item), 0)

    async def subscribe(self, item: StorageItem, on_value: Callable[[Any], None]):
        key = self.key(item)
        sub_id = next(self._sub_ids)
        self.subscribers[key][sub_id] = on_value
        self.open_subscriptions += 1
        self.max_open_subscriptions = max(self.max_open_subscriptions, self.open_subscriptions)
        # A node sends the current value right after subscribing
        on_value(self.storage.get(key, 0))

        async def unsubscribe() -> None:
            if self.subscribers[key].pop(sub_id, None) is not None:
                self.open_subscriptions -= 1

        return unsubscribe

    async def submit(self, call: Call, signer, *, nonce: int | None = None) -> str:
        await asyncio.sleep(0)
        addr = signer.ss58_address
        if self._reject(call, addr):
            raise SubmissionError("1010: Invalid Transaction", signer=addr, call=str(call))
        self.submitted.append((call, addr, nonce))
        self.events.append(("submit", str(call), call_target(call) or addr))
        if not self._drop(call, addr):
            asyncio.get_running_loop().call_later(self._delay(call, addr), self._apply, call, addr)
        if self._unanswered(call, addr):
            # sent, but the caller never heard back
            raise SubmissionUncertain("no answer after 0.0s", signer=addr, call=str(call))
        return f"0x{len(self.submitted):064x}"

    def _apply(self, call: Call, signer: str) -> None:
        self.events.append(("apply", str(call), call_target(call) or signer))
        p = call.params
        match (call.module, call.function):
            case ("Balances", "transfer"):
                self.set("Balances", "FreeBalance", (p["dest"],), self.get("Balances", "FreeBalance", p["dest"]) + p["value"])
            case ("RioAssets", "transfer" | "mint"):
                key = (p["asset_id"], p["to"])
                self.set("RioAssets", "FreeBalance", key, self.get("RioAssets", "FreeBalance", *key) + p["amount"])
        self.set("System", "AccountNonce", (signer,), self.nonce(signer) + 1)

    def submitted_calls(self, name: str) -> list[tuple[Call, str, int | None]]:
        return [s for s in self.submitted if str(s[0]) == name]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def bench_config():
    return load_config(overrides={
        "node": {"probe": False},
        "accounts": {"total": 10, "per_loop": 4},
        "bench": {"watch_timeout": 2.0, "max_in_flight": 0},
    })


@pytest.fixture
def fake_chain():
    return FakeChain()
