import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

from substrateinterface import Keypair, KeypairType

import rio_bench.constants as C

log = logging.getLogger("rio_bench.accounts")


class Signer(Protocol):
    ss58_address: str


def derive_keypair(uri: str, ss58_format: int = C.SS58_FORMAT) -> Keypair:
    return Keypair.create_from_uri(uri, ss58_format=ss58_format, crypto_type=KeypairType.SR25519)


@dataclass
class AccountPool:
    """Test accounts in creation order. Index ``i`` is always derived from ``<prefix><i>``."""

    prefix: str
    derive: Callable[[str], Signer] = derive_keypair
    _accounts: list[Signer] = field(default_factory=list)

    def uri(self, i: int) -> str:
        return f"{self.prefix}{i}"

    def ensure(self, end: int) -> None:
        for i in range(len(self._accounts), end):
            self._accounts.append(self.derive(self.uri(i)))

    def __getitem__(self, i: int) -> Signer:
        self.ensure(i + 1)
        return self._accounts[i]

    def __len__(self) -> int:
        return len(self._accounts)

    def address(self, i: int) -> str:
        return self[i].ss58_address


@dataclass
class NonceTracker:
    """Local, optimistic nonce counter for one account.

    Assumes nobody else submits from this account while the run is going on.
    """

    address: str
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_nonce: int | None = None

    async def sync(self, fetch: Callable) -> int:
        async with self.lock:
            self.next_nonce = int(await fetch(self.address))
            log.debug("nonce for %s synced to %s", self.address, self.next_nonce)
            return self.next_nonce

    async def alloc(self) -> int:
        async with self.lock:
            if self.next_nonce is None:
                raise RuntimeError(f"nonce for {self.address} was never synced")
            n = self.next_nonce
            self.next_nonce += 1
            return n

    async def release(self, nonce: int) -> None:
        """Hand back ``nonce`` if it was the last one allocated and never reached the node."""
        async with self.lock:
            if self.next_nonce == nonce + 1:
                self.next_nonce = nonce
                log.debug(f"Released nonce {nonce} for {self.address}")
            else:
                log.warning(f"Cannot release nonce {nonce} for {self.address} - next is {self.next_nonce} (gap would be created)")
