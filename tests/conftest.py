"""Testing initialization."""

from __future__ import annotations

import asyncio
import configparser
import logging
from collections.abc import AsyncGenerator, Generator

import pytest
import structlog

from ircsession import IRCClient, SessionState


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        raise structlog.exceptions.DropEvent

    structlog.configure(processors=[dummy_processor])


class FakeIRCServer:
    """A fake IRC server, accepting a single client connection.

    It does not implement any of the protocol: lines received from the client
    are shoved into a queue, and lines to the client are sent verbatim.
    """

    def __init__(self) -> None:
        self.address = "127.0.0.1"
        self.port = 0
        self.lines: asyncio.Queue[str] = asyncio.Queue()
        self.connected = asyncio.Event()
        self.writer: asyncio.StreamWriter | None = None
        self.server: asyncio.Server | None = None

    async def start(self) -> None:
        """Listen on a random free port."""
        self.server = await asyncio.start_server(self._handle, self.address, 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        self.connected.set()
        while line := await reader.readline():
            await self.lines.put(line.decode("utf8").rstrip("\r\n"))

    @property
    def hostport(self) -> str:
        """Return the address in the host:port form that IRCClient accepts."""
        return f"{self.address}:{self.port}"

    def send(self, line: str | bytes) -> None:
        """Send a line to the connected client."""
        assert self.writer is not None
        if isinstance(line, str):
            line = line.encode("utf8")
        self.writer.write(line + b"\r\n")

    async def expect(self, start: str, timeout: float = 2) -> str | None:
        """Groks lines until one starting with the given text is found.

        If no such line is found within a timeout, returns None.
        """
        while True:
            try:
                line = await asyncio.wait_for(self.lines.get(), timeout)
            except asyncio.TimeoutError:
                return None
            if line.startswith(start):
                return line

    async def readlines(self, timeout: float = 0.2) -> list[str]:
        """Read and return all lines received, until a timeout occurs."""
        output = []
        while True:
            try:
                output.append(await asyncio.wait_for(self.lines.get(), timeout))
            except asyncio.TimeoutError:
                break
        return output

    def drop(self) -> None:
        """Abruptly close the client connection."""
        if self.writer:
            self.writer.close()

    async def stop(self) -> None:
        """Stop listening and close any client connection."""
        self.drop()
        if self.server:
            self.server.close()
            await self.server.wait_closed()


@pytest.fixture(name="ircserver")
async def fixture_ircserver() -> AsyncGenerator[FakeIRCServer, None]:
    """Fixture for a running instance of a FakeIRCServer."""
    server = FakeIRCServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture(name="client")
async def fixture_client(ircserver: FakeIRCServer) -> AsyncGenerator[IRCClient, None]:
    """Fixture for an IRCClient, pointed at the fake server but not connected.

    Any session left running by the test is disconnected and waited on.
    """
    client = IRCClient(ircserver.hostport, "bob", ping_interval=60, close_timeout=1)
    yield client
    if client.state not in (SessionState.IDLE, SessionState.CLOSED):
        client.disconnect()
        await client.wait()


@pytest.fixture(name="connected")
async def fixture_connected(client: IRCClient, ircserver: FakeIRCServer) -> IRCClient:
    """Fixture for an IRCClient that has connected and sent its registration."""
    await client.connect()
    await asyncio.wait_for(ircserver.connected.wait(), 2)
    assert await ircserver.expect("USER ")
    return client


@pytest.fixture(name="config")
def fixture_config() -> Generator[configparser.ConfigParser, None, None]:
    """Fixture representing an example configuration."""
    config = configparser.ConfigParser()
    config.read_string(
        """
        [irc]
        server = irc.example.org:6697
        tls = yes
        nick = bob
        username = bobuser
        realname = Bob the Bot
        channels = #one, #two
        ping_interval = 30
        """
    )
    yield config
