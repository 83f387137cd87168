"""Callback registry component.

Maps IRC commands to the handlers interested in them, and dispatches
incoming messages to those handlers, each in its own asyncio task.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

if TYPE_CHECKING:
    from .message import IRCMessage, IRCNumeric

logger = structlog.get_logger()

WILDCARD = "*"


class Handler(Protocol):
    """A message handler: any callable taking a message, sync or async."""

    def __call__(self, msg: IRCMessage) -> Awaitable[None] | None:
        """Handle a single message."""


class CallbackRegistry:
    """An ordered, append-only mapping of commands to handlers.

    Handlers registered under the wildcard key ("*") receive every message
    for which there is no handler registered for its exact command.
    """

    def __init__(self, metrics: dict[str, Any] | None = None) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self.metrics = metrics
        self.running_tasks: set[asyncio.Task[None]] = set()

    @staticmethod
    def _key(command: str | IRCNumeric) -> str:
        return str(command).upper()

    def register(self, command: str | IRCNumeric, handler: Handler) -> None:
        """Append a handler for a command (or the wildcard)."""
        self._handlers.setdefault(self._key(command), []).append(handler)

    def handlers_for(self, command: str | IRCNumeric) -> list[Handler]:
        """Return the handlers that would be invoked for a command, in order."""
        key = self._key(command)
        if key in self._handlers:
            return list(self._handlers[key])
        return list(self._handlers.get(WILDCARD, []))

    def dispatch(self, msg: IRCMessage) -> list[asyncio.Task[None]]:
        """Spawn a task for each handler interested in this message.

        Tasks are created in registration order, but run concurrently to each
        other and to the caller. Must be called from within a running loop.
        """
        handlers = self.handlers_for(msg.command)
        if not handlers:
            logger.debug("No handler for command", command=msg.command)
            return []

        tasks = []
        for handler in handlers:
            task = asyncio.create_task(self._run(handler, msg))
            self.running_tasks.add(task)
            task.add_done_callback(self.running_tasks.discard)
            tasks.append(task)
        if self.metrics:
            self.metrics["handlers"].inc(len(tasks))
        return tasks

    async def _run(self, handler: Handler, msg: IRCMessage) -> None:
        """Run a single handler, containing any exception it raises."""
        try:
            result = handler(msg)
            if inspect.isawaitable(result):
                await result
        except Exception:
            if self.metrics:
                self.metrics["errors"].labels("handler").inc()
            logger.exception("Handler failed", command=msg.command, handler=getattr(handler, "__name__", repr(handler)))

    async def wait_idle(self) -> None:
        """Wait until all currently running handlers have finished."""
        # a handler may be the one waiting, e.g. when it disconnects the session
        current = asyncio.current_task()
        while pending := self.running_tasks - {current}:
            await asyncio.gather(*pending, return_exceptions=True)
