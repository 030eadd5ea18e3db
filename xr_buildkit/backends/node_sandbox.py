"""SandboxHost backed by a node child process running scripts in a ``vm`` context."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from xr_buildkit.backends.channel import JsonLinesChannel
from xr_buildkit.backends.sandbox_host import MessageHandler, SandboxHost
from xr_buildkit.exceptions import SandboxError, WorkerUnavailable

log = structlog.get_logger(__name__)

EVAL_TIMEOUT = 10.0

# Runs in node. stdin: {"messageId", "script"}; stdout: {"messageId", "value"|"error"}
# for evaluations and {"post": name, "body": ...} for sandbox-to-host messages.
_RUNNER = r"""
const vm = require('vm');
const readline = require('readline');

function emit(obj) { process.stdout.write(JSON.stringify(obj) + '\n'); }

const context = {
  console: { log() {}, info() {}, warn() {}, error() {}, debug() {} },
  setTimeout, clearTimeout, setInterval, clearInterval, queueMicrotask,
  TextEncoder, TextDecoder, URL, WebAssembly, fetch: globalThis.fetch,
  performance: globalThis.performance,
};
context.window = context;
context.self = context;
context.__buildkitPost = (name, body) => emit({ post: name, body });
vm.createContext(context);

readline.createInterface({ input: process.stdin }).on('line', (line) => {
  let message;
  try { message = JSON.parse(line); } catch (e) { return; }
  try {
    let value = vm.runInContext(message.script, context);
    if (value && typeof value.then === 'function') value = null;
    let encoded = null;
    try { encoded = JSON.parse(JSON.stringify(value === undefined ? null : value)); } catch (e) {}
    emit({ messageId: message.messageId, value: encoded });
  } catch (error) {
    emit({ messageId: message.messageId, error: String((error && error.message) || error) });
  }
});
emit({ status: 'ready' });
"""


class NodeSandboxHost(SandboxHost):
    """Sandbox in a separate node process; requires ``node`` 18+ for fetch."""

    def __init__(self, node_binary: str = "node") -> None:
        self._handlers: dict[str, MessageHandler] = {}
        self._channel = JsonLinesChannel(
            [node_binary, "-e", _RUNNER],
            name="node-sandbox",
            on_message=self._on_message,
        )

    async def open(self) -> None:
        try:
            await self._channel.spawn()
        except OSError as exc:
            raise SandboxError(f"Cannot start node sandbox: {exc}") from exc

    async def evaluate(self, script: str) -> Any:
        try:
            reply = await self._channel.request({"script": script}, timeout=EVAL_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise SandboxError("Sandbox evaluation timed out") from exc
        except WorkerUnavailable as exc:
            raise SandboxError(str(exc)) from exc
        if "error" in reply:
            raise SandboxError(reply["error"])
        return reply.get("value")

    def set_message_handler(self, name: str, handler: MessageHandler) -> None:
        self._handlers[name] = handler

    async def close(self) -> None:
        await self._channel.close()

    def _on_message(self, message: dict[str, Any]) -> None:
        name = message.get("post")
        if name is None:
            return
        handler = self._handlers.get(name)
        if handler is None:
            log.debug("sandbox.unhandled_post", name=name)
            return
        handler(message.get("body"))
