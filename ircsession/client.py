"""IRC client session component.

This implements a client session to a single IRC server. The session runs
four asyncio tasks ("loops") for as long as it is connected:
  * the read loop, which parses incoming lines and dispatches them to the
    registered handlers, each in its own task;
  * the write loop, the sole writer to the stream, fed by an outbound queue;
  * the ping loop, which periodically sends a keepalive PING;
  * the trace loop, which forwards diagnostic text to a trace sink.

Any of these exiting (but for the ping loop) shuts down the whole session.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import configparser
import enum
import itertools
import ssl
import time
from collections.abc import Callable, Coroutine
from typing import Any

import prometheus_client
import structlog
from prometheus_client import Counter

from .message import ERR, IRCMessage, IRCNumeric, format_line
from .registry import CallbackRegistry, Handler

logger = structlog.get_logger()
trace_logger = structlog.get_logger("ircsession.trace")

DEFAULT_PING_INTERVAL = 90


class SessionState(enum.Enum):
    """Lifecycle states of an IRCClient."""

    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"


class SessionStateError(RuntimeError):
    """Raised when an operation is not valid in the session's current state."""


class OutboundQueue:
    """A queue of lines waiting to be written to the server.

    Lines come out in the order they were put in, except for urgent lines,
    which skip ahead of all pending non-urgent ones. Once closed, the queue
    accepts no more lines; the consumer gets what was already queued, and then
    None.
    """

    URGENT, NORMAL, CLOSED = range(3)

    def __init__(self) -> None:
        self._queue: asyncio.PriorityQueue[tuple[int, int, str | None]] = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self.closed = False

    def put(self, line: str, urgent: bool = False) -> bool:
        """Queue a line. Returns False if the queue has been closed."""
        if self.closed:
            return False
        priority = self.URGENT if urgent else self.NORMAL
        self._queue.put_nowait((priority, next(self._sequence), line))
        return True

    def close(self) -> None:
        """Close the queue; further close() calls are no-ops."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait((self.CLOSED, next(self._sequence), None))

    async def get(self) -> str | None:
        """Return the next line, or None if the queue is closed and drained."""
        _, _, line = await self._queue.get()
        return line

    def __len__(self) -> int:
        return self._queue.qsize()


class IRCClient:
    """A client session to an IRC server.

    Constructing an instance does not perform any I/O. connect() opens the
    connection, registers with the server and starts the loops; wait() then
    blocks until the session ends, either because disconnect() was called or
    because the connection failed, and releases all resources.

    Handlers are registered with register_handler() or the on() decorator,
    and may use the outbound methods (privmsg(), join() etc.) to reply.
    """

    def __init__(
        self,
        server: str,
        nick: str,
        tls: bool = False,
        *,
        port: int | None = None,
        username: str | None = None,
        realname: str | None = None,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        close_timeout: float = 5,
        trace_sink: Callable[[str], None] | None = None,
    ) -> None:
        host, sep, maybe_port = server.rpartition(":")
        if sep and maybe_port.isdigit():
            self.host = host
            port = port or int(maybe_port)
        else:
            self.host = server
        self.port = port or (6697 if tls else 6667)
        self.tls = tls

        self._nick = nick
        self.username = username or nick
        self.realname = realname or nick
        self.ping_interval = ping_interval
        self.close_timeout = close_timeout
        self.trace_sink = trace_sink or self._log_trace

        registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any] = {
            "received": Counter("ircsession_messages_received", "Count of IRC messages received", registry=registry),
            "sent": Counter("ircsession_messages_sent", "Count of IRC messages sent", registry=registry),
            "handlers": Counter("ircsession_handlers_dispatched", "Count of handlers dispatched", registry=registry),
            "errors": Counter("ircsession_errors", "Count of errors and exceptions", ["type"], registry=registry),
            "state": prometheus_client.Enum(
                "ircsession_state",
                "Lifecycle state of the IRC session",
                states=[state.value for state in SessionState],
                registry=registry,
            ),
        }
        self.metrics_registry = registry

        self.registry = CallbackRegistry(self.metrics)
        self.outbound = OutboundQueue()
        self._traces: asyncio.Queue[str | None] = asyncio.Queue()
        self._traces_closed = False
        self._shutdown = asyncio.Event()
        self._stop_ping = asyncio.Event()
        self._closed = asyncio.Event()
        self._teardown_started = False
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

        self.log = logger.new().bind(server=self.host, port=self.port, nick=nick)
        self._state = SessionState.IDLE
        self.metrics["state"].state(self._state.value)

        # built-in handlers go first, so that they run ahead of any others
        self.register_handler("PING", self.handle_ping)
        self.register_handler(ERR.NICKNAMEINUSE, self.handle_nick_in_use)

    @classmethod
    def from_config(cls, config: configparser.SectionProxy, **kwargs: Any) -> IRCClient:
        """Create a client from an [irc] configuration section."""
        return cls(
            config.get("server", "localhost"),
            config.get("nick", "ircsession"),
            config.getboolean("tls", fallback=False),
            port=config.getint("port", fallback=None),
            username=config.get("username", fallback=None),
            realname=config.get("realname", fallback=None),
            ping_interval=config.getfloat("ping_interval", fallback=DEFAULT_PING_INTERVAL),
            **kwargs,
        )

    @property
    def nick(self) -> str:
        """Return our current nickname."""
        return self._nick

    @property
    def state(self) -> SessionState:
        """Return the session's lifecycle state."""
        return self._state

    def _set_state(self, state: SessionState) -> None:
        self.log.debug("Session state changed", old=self._state.value, new=state.value)
        self._state = state
        self.metrics["state"].state(state.value)

    async def open_stream(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the connection to the server, over TLS if so configured."""
        ssl_context = ssl.create_default_context() if self.tls else None
        # specs say length is 512 (including CRLF) - set limit to handle more, as implementations vary
        return await asyncio.open_connection(self.host, self.port, ssl=ssl_context, limit=512 * 2)

    async def connect(self) -> None:
        """Connect to the server, register and start all loops.

        Connection errors are raised to the caller, and leave the session idle,
        so that connect() can be retried.
        """
        if self.state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot connect while {self.state.value}")

        self._set_state(SessionState.CONNECTING)
        self.log.info("Connecting", tls=self.tls)
        try:
            self._reader, self._writer = await self.open_stream()
        except OSError as exc:
            self.log.warning("Connection failed", error=str(exc))
            self._set_state(SessionState.IDLE)
            raise
        self.log.info("Connected")

        loops: dict[str, Callable[[], Coroutine[Any, Any, None]]] = {
            "trace": self._trace_loop,
            "read": self._read_loop,
            "write": self._write_loop,
            "ping": self._ping_loop,
        }
        self._tasks = {name: asyncio.create_task(loop(), name=f"ircsession-{name}") for name, loop in loops.items()}
        self._set_state(SessionState.RUNNING)

        # registration goes ahead of anything queued before connecting
        self.writeln("NICK", self.nick, urgent=True)
        self.writeln("USER", self.username, "8", "*", trailing=self.realname, urgent=True)

    def disconnect(self, reason: str | None = None) -> None:
        """Gracefully disconnect: send a QUIT, then shut the session down.

        This only initiates the shutdown; use wait() for it to complete.
        """
        if self.state is not SessionState.RUNNING:
            self.log.debug("Not connected, ignoring disconnect", state=self.state.value)
            return
        self.quit(reason)
        self._stop_ping.set()
        self._signal_shutdown("disconnect")

    def _signal_shutdown(self, reason: str) -> None:
        """Signal that the session should shut down; only the first call counts."""
        if self._shutdown.is_set():
            return
        self.log.info("Shutting down", reason=reason)
        self._shutdown.set()
        if self.state is SessionState.RUNNING:
            self._set_state(SessionState.DRAINING)

    async def wait(self) -> None:
        """Block until the session has shut down and released its resources.

        Safe to call multiple times and from multiple tasks; the teardown
        happens exactly once. The session must be connected, i.e. connect()
        must have returned successfully.
        """
        if self.state in (SessionState.IDLE, SessionState.CONNECTING):
            raise SessionStateError(f"Cannot wait on a session that is {self.state.value}")

        await self._shutdown.wait()
        if self._teardown_started:
            await self._closed.wait()
            return

        self._teardown_started = True
        try:
            await self._teardown()
        finally:
            self._set_state(SessionState.CLOSED)
            self._closed.set()
            self.log.info("Session closed")

    async def _teardown(self) -> None:
        self._stop_ping.set()
        self.outbound.close()
        self._close_traces()

        # let the write loop flush what is still queued (e.g. the QUIT)
        write_task = self._tasks.get("write")
        if write_task:
            await asyncio.wait({write_task}, timeout=self.close_timeout)

        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as exc:
                self.log.debug("Error while closing the connection", error=str(exc))

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks.values(), timeout=self.close_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        try:
            await asyncio.wait_for(self.registry.wait_idle(), self.close_timeout)
        except asyncio.TimeoutError:
            self.log.warning("Handlers still running after close, cancelled them")

    async def _write_loop(self) -> None:
        """Write queued lines to the stream, one at a time."""
        assert self._writer is not None
        try:
            while (line := await self.outbound.get()) is not None:
                self.log.debug("Data sent", message=line)
                try:
                    # format_line() guarantees an encodable line
                    self._writer.write(line.encode("utf8") + b"\r\n")
                    await self._writer.drain()
                except OSError as exc:
                    self.metrics["errors"].labels("write").inc()
                    self.log.info("Write failed", error=str(exc))
                    break
                self.metrics["sent"].inc()
        finally:
            self._signal_shutdown("write loop exited")

    async def _read_loop(self) -> None:
        """Read lines from the stream, parse and dispatch them."""
        assert self._reader is not None
        try:
            while True:
                try:
                    bline = await self._reader.readline()
                except ValueError:
                    self.log.debug("Line exceeded max length, ignoring")
                    continue
                except OSError as exc:
                    self.metrics["errors"].labels("read").inc()
                    self.log.info("Read failed", error=str(exc))
                    break

                if not bline:
                    self.log.info("Connection closed by server")
                    break

                line = bline.decode("utf8", errors="replace").rstrip("\r\n")
                # ignore empty lines
                if not line:
                    continue
                self.log.debug("Data received", message=line)
                self.metrics["received"].inc()
                self.registry.dispatch(IRCMessage.parse(line, self.nick))
        finally:
            self._signal_shutdown("read loop exited")

    async def _ping_loop(self) -> None:
        """Send a PING every ping_interval seconds, until told to stop."""
        while not self._stop_ping.is_set():
            try:
                await asyncio.wait_for(self._stop_ping.wait(), timeout=self.ping_interval)
            except asyncio.TimeoutError:
                self.writeln("PING", str(time.monotonic_ns()))
        self.log.debug("Ping loop stopped")

    async def _trace_loop(self) -> None:
        """Forward trace text to the trace sink."""
        try:
            while (text := await self._traces.get()) is not None:
                try:
                    self.trace_sink(text)
                except Exception:
                    self.log.exception("Trace sink failed")
        finally:
            self._signal_shutdown("trace loop exited")

    @staticmethod
    def _log_trace(text: str) -> None:
        trace_logger.info(text)

    def _close_traces(self) -> None:
        if not self._traces_closed:
            self._traces_closed = True
            self._traces.put_nowait(None)

    def trace(self, text: str) -> None:
        """Submit diagnostic text to the trace sink."""
        if self._traces_closed:
            return
        self._traces.put_nowait(text)

    def writeln(
        self,
        command: str | IRCNumeric,
        *params: str,
        trailing: str | None = None,
        urgent: bool = False,
    ) -> None:
        """Queue a line to be sent to the server.

        Lines are sent in the order they were queued, except for urgent ones,
        which go ahead of everything that is still pending.
        """
        line = format_line(command, *params, trailing=trailing)
        if not self.outbound.put(line, urgent=urgent):
            self.log.debug("Data not sent (session closed)", message=line)

    def join(self, channel: str, key: str | None = None) -> None:
        """Join a channel, optionally with a channel key."""
        if key:
            self.writeln("JOIN", channel, key)
        else:
            self.writeln("JOIN", channel)

    def part(self, channel: str, reason: str | None = None) -> None:
        """Leave a channel."""
        self.writeln("PART", channel, trailing=reason)

    def privmsg(self, target: str, text: str) -> None:
        """Send a message to a channel or a user."""
        self.writeln("PRIVMSG", target, trailing=text)

    def notice(self, target: str, text: str) -> None:
        """Send a notice to a channel or a user."""
        self.writeln("NOTICE", target, trailing=text)

    def change_nick(self, nick: str) -> None:
        """Change our nickname.

        This is the only place the nickname is ever changed. It never awaits,
        so the new nickname and its NICK line are always queued together.
        """
        self.log = self.log.bind(nick=nick)
        self._nick = nick
        self.writeln("NICK", nick)

    def quit(self, reason: str | None = None) -> None:
        """Send a QUIT; see disconnect() for also shutting down the session."""
        self.writeln("QUIT", trailing=reason)

    def register_handler(self, command: str | IRCNumeric, handler: Handler) -> None:
        """Register a handler for a command, a numeric, or "*" for all unhandled commands."""
        self.registry.register(command, handler)

    def on(self, command: str | IRCNumeric) -> Callable[[Handler], Handler]:
        """Return a decorator registering the decorated function as a handler."""

        def decorator(handler: Handler) -> Handler:
            self.register_handler(command, handler)
            return handler

        return decorator

    def handle_ping(self, msg: IRCMessage) -> None:
        """Reply to server PINGs, ahead of anything else queued."""
        if msg.trailing is not None:
            payload = msg.trailing
        elif msg.params:
            payload = msg.params[0]
        else:
            payload = ""

        if payload and " " not in payload and not payload.startswith(":"):
            self.writeln("PONG", payload, urgent=True)
        else:
            self.writeln("PONG", trailing=payload, urgent=True)

    def handle_nick_in_use(self, _: IRCMessage) -> None:
        """Pick another nickname when ours is already taken."""
        new_nick = self.nick + "-"
        self.log.info("Nickname in use, changing it", new_nick=new_nick)
        self.trace(f"Nick {self.nick} is in use, changing to {new_nick}.")
        self.change_nick(new_nick)

    def __repr__(self) -> str:
        """Return a user-readable description of the client."""
        return f"<{self.__class__.__name__} {self.nick}@{self.host}:{self.port} {self.state.value}>"
