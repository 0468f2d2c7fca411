import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Protocol

import httpx
import websockets
from scalecodec.base import ScaleBytes
from substrateinterface import SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException

import rio_bench.constants as C
from rio_bench.config import load_type_registry
from rio_bench.errors import NodeUnavailable, SubmissionError, SubmissionUncertain
from rio_bench.ws import StorageSubscriber

log = logging.getLogger("rio_bench.chain")

Unsubscribe = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Call:
    module: str
    function: str
    params: dict = field(default_factory=dict, hash=False)

    def __str__(self):
        return f"{self.module}.{self.function}"


@dataclass(frozen=True, slots=True)
class StorageItem:
    module: str
    function: str
    params: tuple = ()

    def __str__(self):
        args = ", ".join(str(p) for p in self.params)
        return f"{self.module}.{self.function}({args})"


class ChainClient(Protocol):
    async def query(self, item: StorageItem) -> Any: ...
    async def subscribe(self, item: StorageItem, on_value: Callable[[Any], None]) -> Unsubscribe: ...
    async def submit(self, call: Call, signer: Any, *, nonce: int | None = None) -> str: ...
    async def close(self) -> None: ...


async def probe_node(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> dict:
    """Ask the node for system_health until it answers.

    Args:
        url: HTTP RPC endpoint URL
        max_retries: Maximum number of attempts
        retry_delay: Seconds to wait between attempts
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": "system_health", "params": []}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                health = r.json().get("result", {})
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries}): {health}")
                return health
        except (httpx.HTTPError, ValueError) as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise NodeUnavailable(f"{url} did not answer system_health: {e}") from e
    raise NodeUnavailable(f"{url}: no probe attempts made")


class SubstrateChain:
    """ChainClient backed by substrate-interface plus a shared storage subscriber.

    substrate-interface is blocking and its connection is not thread-safe, so every
    library call goes through a single worker thread.
    """

    def __init__(
        self,
        substrate: SubstrateInterface,
        subscriber: StorageSubscriber,
        executor: ThreadPoolExecutor,
        *,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ):
        self.substrate = substrate
        self.subscriber = subscriber
        self.submit_timeout = submit_timeout
        self._executor = executor

    @classmethod
    async def connect(cls, conf: dict) -> "SubstrateChain":
        node = conf["node"]
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="substrate")
        loop = asyncio.get_running_loop()
        substrate = None
        try:
            substrate = await loop.run_in_executor(
                executor,
                partial(
                    SubstrateInterface,
                    url=node["ws_url"],
                    ss58_format=node["ss58_format"],
                    type_registry=load_type_registry(conf),
                ),
            )
            subscriber = await StorageSubscriber(node["ws_url"]).connect()
        except (ConnectionError, OSError, TimeoutError, websockets.WebSocketException) as e:
            if substrate is not None:
                await loop.run_in_executor(executor, substrate.close)
            executor.shutdown(wait=False)
            raise NodeUnavailable(f"cannot connect to {node['ws_url']}: {e}") from e

        log.info("Connected to %s (%s %s)", node["ws_url"], substrate.chain, substrate.runtime_version)
        return cls(substrate, subscriber, executor, submit_timeout=conf["bench"]["submit_timeout"])

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(self._executor, partial(fn, *args, **kwargs))

    async def query(self, item: StorageItem) -> Any:
        result = await self._run(self.substrate.query, item.module, item.function, list(item.params))
        return result.value

    async def subscribe(self, item: StorageItem, on_value: Callable[[Any], None]) -> Unsubscribe:
        storage_key = await self._run(
            self.substrate.create_storage_key, item.module, item.function, list(item.params)
        )

        def on_change(_key_hex: str, data: str | None) -> None:
            obj = storage_key.decode_scale_value(ScaleBytes(data) if data else None)
            on_value(obj.value)

        sub_id = await self.subscriber.subscribe(storage_key.to_hex(), on_change)

        async def unsubscribe() -> None:
            await self.subscriber.unsubscribe(sub_id)

        return unsubscribe

    def _submit_blocking(self, call: Call, signer, nonce: int | None) -> str:
        composed = self.substrate.compose_call(
            call_module=call.module,
            call_function=call.function,
            call_params=call.params,
        )
        extrinsic = self.substrate.create_signed_extrinsic(call=composed, keypair=signer, nonce=nonce)
        receipt = self.substrate.submit_extrinsic(extrinsic, wait_for_inclusion=False)
        return receipt.extrinsic_hash

    async def submit(self, call: Call, signer, *, nonce: int | None = None) -> str:
        try:
            async with asyncio.timeout(self.submit_timeout):
                return await self._run(self._submit_blocking, call, signer, nonce)
        except SubstrateRequestException as e:
            raise SubmissionError(str(e), signer=signer.ss58_address, call=str(call)) from e
        except TimeoutError as e:
            # the worker thread keeps going, so the extrinsic may still be sent
            raise SubmissionUncertain(
                f"no answer after {self.submit_timeout}s", signer=signer.ss58_address, call=str(call)
            ) from e

    async def close(self) -> None:
        await self.subscriber.close()
        await self._run(self.substrate.close)
        self._executor.shutdown(wait=False)
