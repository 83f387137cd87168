"""IRC message component.

Parses raw wire protocol lines into IRCMessage instances, and formats
outgoing lines. Also holds the numeric replies the client cares about.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import enum
import re
from collections.abc import Sequence

# in bytes, 512 including CRLF; RFC 2813, section 3.3
MAX_LINE_LENGTH = 510

CHANNEL_PREFIXES = ("#", "&", "!", "+")


class IRCNumeric(enum.Enum):
    """Base class for IRC numeric enums."""

    def __str__(self) -> str:
        """Return the numeric in the wire protocol format, e.g. 001."""
        return str(self.value).zfill(3)

    def __repr__(self) -> str:
        """Return the representation of the numeric, e.g. RPL_WELCOME."""
        return f"{self.__class__.__name__}_{self.name}"


@enum.unique
class RPL(IRCNumeric):
    """Standard IRC RPL_* replies, as defined in RFCs."""

    WELCOME = 1
    TOPIC = 332
    TOPICWHOTIME = 333
    NAMREPLY = 353
    ENDOFNAMES = 366
    MOTD = 372
    MOTDSTART = 375
    ENDOFMOTD = 376


@enum.unique
class ERR(IRCNumeric):
    """Erroneous IRC ERR_* replies, as defined in RFCs."""

    NOMOTD = 422
    NICKNAMEINUSE = 433


class NotPrivmsgError(ValueError):
    """Raised when asking for the response target of anything but a PRIVMSG."""


def _clean(component: str) -> str:
    # a stray CR or LF would let a parameter inject a second command
    return component.replace("\r", "").replace("\n", "").replace("\0", "")


def format_line(command: str | IRCNumeric, *params: str, trailing: str | None = None) -> str:
    """Build a wire protocol line (without CRLF), e.g. PRIVMSG #chan :hello there.

    Middle parameters are expected not to contain spaces; anything that does
    belongs in the trailing parameter.

    The result always encodes to at most MAX_LINE_LENGTH bytes of UTF-8;
    characters that cannot be encoded (lone surrogates) are replaced.
    """
    components = [_clean(str(command))]
    components.extend(_clean(param) for param in params if param)
    if trailing is not None:
        components.append(":" + _clean(trailing))
    encoded = " ".join(components).encode("utf8", errors="replace")[:MAX_LINE_LENGTH]
    # a multi-byte character cut in half is dropped entirely
    return encoded.decode("utf8", errors="ignore")


@dataclasses.dataclass(frozen=True)
class IRCMessage:
    """Represents a single RFC 1459 message, as received from the server.

    Instances are typically created with the parse() class method. The
    trailing parameter is kept apart from the middle parameters, and the
    source prefix is decomposed to nick/user/host whenever it looks like a
    user mask.
    """

    raw: str
    command: str
    params: Sequence[str] = ()
    trailing: str | None = None
    prefix: str | None = None
    nick: str | None = None
    user: str | None = None
    host: str | None = None
    own_nick: str | None = None

    @classmethod
    def parse(cls, raw: str, own_nick: str | None = None) -> IRCMessage:
        """Parse a line received from the server, with CR/LF already stripped.

        This never fails for a non-empty line: malformed input yields a
        best-effort message instead.
        """
        if not raw:
            raise ValueError("Invalid IRC message (empty line)")

        prefix = None
        rest = raw
        if raw.startswith(":"):
            prefix, _, rest = raw[1:].partition(" ")

        middle, sep, trailing = rest.partition(" :")
        # skip multiple spaces in middle of message, as per RFC 1459
        tokens = [token for token in middle.split(" ") if token]
        command = tokens[0].upper() if tokens else ""

        nick = user = host = None
        if prefix:
            parts = [part for part in re.split(r"[!@]", prefix) if part]
            if len(parts) == 3:
                nick, user, host = parts

        return cls(
            raw=raw,
            command=command,
            params=tuple(tokens[1:]),
            trailing=trailing if sep else None,
            prefix=prefix,
            nick=nick,
            user=user,
            host=host,
            own_nick=own_nick,
        )

    def is_channel_msg(self) -> bool:
        """Return True if this is a PRIVMSG sent to a channel."""
        return self.command == "PRIVMSG" and bool(self.params) and self.params[0].startswith(CHANNEL_PREFIXES)

    def respond_to(self) -> str:
        """Return where replies to this PRIVMSG should go.

        That is the channel for channel messages, and the sender otherwise.
        """
        if self.command != "PRIVMSG":
            raise NotPrivmsgError("Command not PRIVMSG")
        if self.is_channel_msg():
            return self.params[0]
        # a bare "nick" source has no !/@ to decompose
        sender = self.nick or self.prefix
        if not sender:
            raise ValueError("PRIVMSG without a source")
        return sender

    @property
    def is_from_self(self) -> bool:
        """Return True if we sent this message ourselves (e.g. a JOIN echo)."""
        return self.nick is not None and self.nick == self.own_nick

    def __str__(self) -> str:
        """Render the message back to the wire protocol format."""
        line = format_line(self.command, *self.params, trailing=self.trailing)
        if self.prefix is not None:
            line = f":{self.prefix} {line}"
        return line
