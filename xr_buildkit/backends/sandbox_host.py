"""Script sandbox abstraction used by the sandboxed compiler backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

MessageHandler = Callable[[Any], None]


class SandboxHost(ABC):
    """
    An isolated script-execution context outside the host process
    (an embedded browser engine, a node ``vm`` context, ...).

    Scripts run with a ``window`` global. The sandbox posts messages back
    through ``window.__buildkitPost(name, body)``; the host routes them to the
    handler registered under ``name``.
    """

    @abstractmethod
    async def open(self) -> None:
        """Provision the sandbox."""
        ...

    @abstractmethod
    async def evaluate(self, script: str) -> Any:
        """Evaluate *script* and return its JSON-compatible completion value.

        Raises SandboxError if evaluation throws. Returned promises are not
        awaited.
        """
        ...

    @abstractmethod
    def set_message_handler(self, name: str, handler: MessageHandler) -> None:
        ...

    async def close(self) -> None:
        return None
