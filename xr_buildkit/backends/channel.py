"""Duplex JSON-lines channel to a child process with correlation-id matching."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from typing import Any

import structlog

from xr_buildkit.exceptions import WorkerUnavailable

log = structlog.get_logger(__name__)

# Bundles travel as single lines; inline source maps make them large.
_LINE_LIMIT = 64 * 1024 * 1024

MESSAGE_ID = "messageId"


class JsonLinesChannel:
    """
    Spawns ``argv`` and exchanges one JSON object per line over stdin/stdout.

    Replies are matched to requests by ``messageId``. The pending entry is
    popped before the waiter is resolved, so a replayed or late reply finds no
    entry and is dropped. Lines without a known id go to ``on_message``.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        name: str,
        on_message: Callable[[dict[str, Any]], None] | None = None,
        env: dict[str, str] | None = None,
        line_limit: int = _LINE_LIMIT,
    ) -> None:
        self._argv = argv
        self._name = name
        self._on_message = on_message
        self._env = env
        self._line_limit = line_limit
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def spawn(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=self._env,
            limit=self._line_limit,
        )
        self._reader = asyncio.create_task(self._read_loop(), name=f"{self._name}-reader")
        log.info("channel.spawned", channel=self._name, pid=self._proc.pid)

    async def send(self, payload: dict[str, Any]) -> None:
        """Fire-and-forget write."""
        if not self.running or self._proc is None or self._proc.stdin is None:
            raise WorkerUnavailable(f"{self._name} process is not running")
        line = json.dumps(payload, separators=(",", ":")) + "\n"
        async with self._write_lock:
            self._proc.stdin.write(line.encode("utf-8"))
            await self._proc.stdin.drain()

    async def request(self, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        """Send *payload* with a fresh messageId and await the matching reply.

        Raises ``asyncio.TimeoutError`` on timeout and ``WorkerUnavailable``
        if the process is gone or exits while waiting.
        """
        message_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self.send({**payload, MESSAGE_ID: message_id})
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(message_id, None)

    def dispatch(self, message: dict[str, Any]) -> None:
        message_id = message.get(MESSAGE_ID)
        if message_id is not None:
            future = self._pending.pop(message_id, None)
            if future is None:
                log.debug("channel.reply_dropped", channel=self._name, message_id=message_id)
                return
            if not future.done():
                future.set_result(message)
            return
        if self._on_message is not None:
            self._on_message(message)

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        self._fail_pending(f"{self._name} channel closed")

    async def _read_loop(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        while True:
            try:
                raw = await stdout.readline()
            except (ValueError, asyncio.LimitOverrunError):
                # The oversized reply cannot be matched to its request
                log.error("channel.line_too_long", channel=self._name, limit=self._line_limit)
                self._fail_pending(f"{self._name} reply exceeded line limit")
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                log.debug("channel.non_json_line", channel=self._name, line=text[:200])
                continue
            if isinstance(message, dict):
                self.dispatch(message)
        returncode = await self._proc.wait() if self._proc is not None else None
        log.warning("channel.exited", channel=self._name, returncode=returncode)
        self._fail_pending(f"{self._name} process exited")
        if self._on_message is not None:
            self._on_message({"status": "exited", "returncode": returncode})

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(WorkerUnavailable(reason))
