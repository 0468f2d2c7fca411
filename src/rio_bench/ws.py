# rio_bench/ws.py
"""
WebSocket storage subscriber that:
1. Keeps one connection to the node's WS endpoint
2. Multiplexes state_subscribeStorage subscriptions over it
3. Dispatches each storage change to the callback registered for its subscription
"""
import asyncio
import itertools
import json
import logging
from typing import Any, Callable

import websockets

import rio_bench.constants as C

log = logging.getLogger("rio_bench.ws")

# callback(storage_key_hex, scale_data_hex_or_None)
ChangeHandler = Callable[[str, str | None], None]


class StorageSubscriber:
    def __init__(self, ws_url: str, *, rpc_timeout: float = C.RPC_TIMEOUT):
        self.ws_url = ws_url
        self.rpc_timeout = rpc_timeout
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._responses: dict[int, asyncio.Future] = {}
        self._handlers: dict[str, ChangeHandler] = {}
        # Notifications that beat their subscribe() caller to the handler table
        self._early: dict[str, list[list]] = {}
        self._retired: set[str] = set()

    @property
    def connected(self) -> bool:
        return self._reader is not None and not self._reader.done()

    async def connect(self) -> "StorageSubscriber":
        self._ws = await websockets.connect(
            self.ws_url,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=1,
            max_size=None,
        )
        log.info("WS connected: %s", self.ws_url)
        self._reader = asyncio.create_task(self._read_loop(), name="ws_storage_reader")
        return self

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
        self._fail_pending(ConnectionError("subscriber closed"))
        log.info("WS subscriber closed")

    async def request(self, method: str, params: list) -> Any:
        if not self.connected:
            raise ConnectionError(f"not connected to {self.ws_url}")
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._responses[req_id] = fut
        try:
            await self._ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}))
            return await asyncio.wait_for(fut, timeout=self.rpc_timeout)
        finally:
            self._responses.pop(req_id, None)

    async def subscribe(self, key_hex: str, handler: ChangeHandler) -> str:
        sub_id = await self.request("state_subscribeStorage", [[key_hex]])
        self._handlers[sub_id] = handler
        for changes in self._early.pop(sub_id, []):
            self._dispatch(sub_id, changes)
        log.debug("subscribed %s -> %s", key_hex[:18], sub_id)
        return sub_id

    async def unsubscribe(self, sub_id: str) -> None:
        self._retired.add(sub_id)
        self._handlers.pop(sub_id, None)
        self._early.pop(sub_id, None)
        if not self.connected:
            return
        try:
            await self.request("state_unsubscribeStorage", [sub_id])
        except (asyncio.TimeoutError, ConnectionError, RuntimeError) as e:
            log.debug("unsubscribe %s failed: %s", sub_id, e)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    self._process_message(raw)
                except Exception as e:
                    log.error("Error processing WS message: %s", e, exc_info=True)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            log.error("WS connection closed: %s", e)
            self._fail_pending(ConnectionError(str(e)))
        else:
            self._fail_pending(ConnectionError("connection closed by node"))

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._responses.values():
            if not fut.done():
                fut.set_exception(exc)

    def _process_message(self, raw_msg: str | bytes) -> None:
        """
        Route one message from the node.

        - id present -> response to a request() call
        - method == state_storage -> storage change for a subscription
        """
        try:
            obj = json.loads(raw_msg)
        except json.JSONDecodeError:
            log.debug("WS raw (non-JSON): %s", raw_msg[:200])
            return

        req_id = obj.get("id")
        if req_id is not None:
            fut = self._responses.get(req_id)
            if fut is None or fut.done():
                log.debug("WS response for unknown request %s", req_id)
                return
            if "error" in obj:
                fut.set_exception(RuntimeError(f"rpc error: {obj['error']}"))
            else:
                fut.set_result(obj.get("result"))
            return

        if obj.get("method") == "state_storage":
            params = obj.get("params", {})
            sub_id = params.get("subscription")
            changes = params.get("result", {}).get("changes", [])
            if sub_id in self._handlers:
                self._dispatch(sub_id, changes)
            elif sub_id not in self._retired:
                self._early.setdefault(sub_id, []).append(changes)
            return

        log.debug("WS unknown message: %s", obj.get("method") or "no_method")

    def _dispatch(self, sub_id: str, changes: list) -> None:
        handler = self._handlers.get(sub_id)
        if handler is None:
            return
        for key_hex, data in changes:
            handler(key_hex, data)
