"""Thin async client for the foreverVM API.

Machines are created over HTTP; code runs over a per-call WebSocket whose
messages a background reader task fans out into an output queue and a
result future.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from forevervm_mcp.config import ForeverVMOptions

log = logging.getLogger(__name__)

_CLOSED = object()


class ForeverVMError(Exception):
    """The foreverVM API rejected a request or broke its protocol."""


class ReplConnectionError(ForeverVMError):
    """The REPL socket closed before the execution finished."""


@dataclass(frozen=True)
class OutputChunk:
    data: str
    stream: str = "stdout"
    seq: int | None = None


class ReplExecResult:
    """One running instruction.

    ``output`` yields chunks in arrival order and can be drained once;
    ``result`` resolves to the raw result mapping after the last chunk.
    """

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        self.instruction_seq: int | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._result: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self.output: AsyncIterator[OutputChunk] = self._drain()

    @property
    def result(self) -> asyncio.Future[dict[str, Any]]:
        return self._result

    @property
    def done(self) -> bool:
        return self._result.done()

    async def _drain(self) -> AsyncIterator[OutputChunk]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    def push(self, chunk: OutputChunk) -> None:
        if not self.done:
            self._queue.put_nowait(chunk)

    def resolve(self, result: dict[str, Any]) -> None:
        if self.done:
            return
        self._result.set_result(result)
        self._queue.put_nowait(_CLOSED)

    def fail(self, exc: BaseException) -> None:
        if self.done:
            return
        self._result.set_exception(exc)
        # the drain re-raises it, so mark the future's exception as retrieved
        self._result.exception()
        self._queue.put_nowait(exc)


class Repl:
    """A connected REPL socket. Runs one instruction at a time."""

    def __init__(self, websocket: Any, machine_name: str) -> None:
        self.machine_name = machine_name
        self._ws = websocket
        self._request_id = 0
        self._pending: ReplExecResult | None = None
        self._reader: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        try:
            if self._reader is not None:
                reader, self._reader = self._reader, None
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    # only the reader's own cancellation is expected here
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
        finally:
            await self._ws.close()
            if self._pending is not None:
                self._pending.fail(ReplConnectionError("REPL connection closed"))

    async def exec(self, code: str) -> ReplExecResult:
        if self._pending is not None and not self._pending.done:
            raise ForeverVMError("an instruction is already running on this REPL")
        self._request_id += 1
        pending = ReplExecResult(self._request_id)
        self._pending = pending
        await self._ws.send(
            json.dumps(
                {
                    "type": "exec",
                    "instruction": {"code": code},
                    "request_id": self._request_id,
                }
            )
        )
        return pending

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._handle_message(raw)
        except ConnectionClosed as exc:
            reason = ReplConnectionError(f"REPL connection closed: {exc}")
        except Exception as exc:
            log.exception("REPL reader for %s failed", self.machine_name)
            reason = ReplConnectionError(f"REPL reader failed: {exc}")
        else:
            reason = ReplConnectionError("REPL connection closed")
        if self._pending is not None:
            self._pending.fail(reason)

    def _handle_message(self, raw: str | bytes) -> None:
        pending = self._pending
        try:
            message = json.loads(raw)
        except ValueError:
            message = None
        if not isinstance(message, dict):
            log.warning("Malformed message from REPL %s", self.machine_name)
            if pending is not None:
                pending.fail(ForeverVMError("received a malformed message from the REPL"))
            return

        kind = message.get("type")
        if kind == "connected":
            log.debug("Connected to machine %s", message.get("machine_name"))
            return
        if pending is None:
            log.debug("Dropping %s message with nothing pending", kind)
            return

        if kind == "exec_received":
            if message.get("request_id") == pending.request_id:
                pending.instruction_seq = message.get("seq")
        elif kind == "output":
            if not self._is_current(pending, message):
                return
            chunk = message.get("chunk") or {}
            pending.push(
                OutputChunk(
                    data=str(chunk.get("data", "")),
                    stream=chunk.get("stream", "stdout"),
                    seq=chunk.get("seq"),
                )
            )
        elif kind == "result":
            if not self._is_current(pending, message):
                return
            result = message.get("result")
            pending.resolve(result if isinstance(result, dict) else {})
        elif kind == "error":
            pending.fail(ForeverVMError(f"REPL error: {message.get('code', 'unknown')}"))
        else:
            log.debug("Ignoring unknown REPL message type %r", kind)

    @staticmethod
    def _is_current(pending: ReplExecResult, message: dict[str, Any]) -> bool:
        instruction_id = message.get("instruction_id")
        if instruction_id is None or pending.instruction_seq is None:
            return True
        return instruction_id == pending.instruction_seq


class ForeverVMClient:
    """foreverVM API client bound to one set of options."""

    def __init__(
        self,
        options: ForeverVMOptions,
        http: httpx.AsyncClient,
        connect: Callable[..., Any] = ws_connect,
    ) -> None:
        self.options = options
        self._http = http
        self._connect = connect

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.options.token}"}

    def repl_url(self, machine_name: str) -> str:
        base = self.options.base_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/v1/machine/{quote(machine_name, safe='')}/repl"

    async def create_machine(self) -> str:
        """POST /v1/machine/new and return the new machine's name."""
        r = await self._http.post(
            f"{self.options.base_url}/v1/machine/new",
            json={},
            headers=self._headers,
        )
        if r.is_error:
            raise ForeverVMError(f"HTTP {r.status_code}: {r.text}")
        name = r.json().get("machine_name")
        if not name:
            raise ForeverVMError("response did not include a machine name")
        log.info("Created machine %s", name)
        return name

    @asynccontextmanager
    async def repl(self, machine_name: str) -> AsyncIterator[Repl]:
        """Open a REPL socket; it is closed however the block exits."""
        websocket = await self._connect(
            self.repl_url(machine_name), additional_headers=self._headers
        )
        repl = Repl(websocket, machine_name)
        repl.start()
        try:
            yield repl
        finally:
            await repl.close()
