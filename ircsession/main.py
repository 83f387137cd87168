"""Command-line executable component.

Reads the configuration file, sets up logging (including where the raw trace
of the session goes), connects a client, joins the configured channels and
runs until the session ends, or until interrupted by a signal.

Provides a run() function, used by __main__ or directly.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import configparser
import errno
import logging
import pathlib
import signal
import sys
from collections.abc import Mapping, Sequence

import prometheus_client
import structlog

from ._version import __version__
from .client import IRCClient
from .message import RPL, IRCMessage

logger = structlog.get_logger()

TRACE_LOGGER = "ircsession.trace"


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ircsession",
        description="Connect to an IRC server, join channels and trace what the server says",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    candidates = (pathlib.Path("ircsession.conf"), pathlib.Path("/etc/ircsession.conf"))
    default_config = next((path for path in candidates if path.exists()), candidates[-1])
    parser.add_argument("--config-file", "-c", type=pathlib.Path, default=default_config, help="Configuration file")
    parser.add_argument("--nick", help="Nickname to use (overrides config)")
    parser.add_argument("--trace-file", type=pathlib.Path, help="Write the raw session trace to this file")
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        help="Log level for the whole package (overrides config)",
    )
    parser.add_argument(
        "--log-format",
        choices=("plain", "console", "json"),
        default="console" if sys.stdout.isatty() else "plain",
        help="Log format",
    )
    return parser.parse_args(argv)


def _renderer_for(log_format: str) -> tuple[list[structlog.typing.Processor], structlog.typing.Processor]:
    """Return the extra processors and the final renderer for a log format."""
    if log_format == "plain":
        return [], structlog.dev.ConsoleRenderer(colors=False)
    if log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        return [timestamper], structlog.dev.ConsoleRenderer(colors=True)
    if log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        return [timestamper], structlog.processors.JSONRenderer(sort_keys=True)
    raise ValueError(f"Invalid logging format specified: {log_format}")


def _render_trace_line(_logger: logging.Logger, _name: str, event_dict: structlog.types.EventDict) -> str:
    return str(event_dict["event"])


def configure_logging(log_format: str, trace_file: pathlib.Path | None = None) -> None:
    """Render structlog events through the stdlib root logger.

    If a trace file is given, the trace logger writes there instead, as bare
    lines without any decoration, so that it reads like a transcript of the
    session.
    """
    extra_processors, renderer = _renderer_for(log_format)
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        *extra_processors,
    ]

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_handler = logging.StreamHandler()
    root_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*processors, structlog.stdlib.ExtraAdder()],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.addHandler(root_handler)
    # only until the configuration file has been read
    root_logger.setLevel(logging.WARNING)

    if trace_file:
        trace_handler = logging.FileHandler(trace_file, encoding="utf-8")
        trace_handler.setFormatter(structlog.stdlib.ProcessorFormatter(processors=[_render_trace_line]))
        trace_logger = logging.getLogger(TRACE_LOGGER)
        trace_logger.addHandler(trace_handler)
        trace_logger.setLevel(logging.INFO)
        trace_logger.propagate = False


def configure_log_levels(levels: Mapping[str, str], override_level: str | int | None = None) -> None:
    """Apply per-logger levels, e.g. from a [loggers] section, then the package-wide override.

    Raises ValueError on unknown level names, before changing anything.
    """
    resolved = {}
    for name, level in levels.items():
        if not isinstance(logging.getLevelName(level.upper()), int):
            raise ValueError(f"unknown log level {level!r} for logger {name!r}")
        resolved[None if name == "root" else name] = level.upper()

    for name, level in resolved.items():
        logging.getLogger(name).setLevel(level)
    if override_level:
        logging.getLogger("ircsession").setLevel(override_level)


def load_config(path: pathlib.Path) -> configparser.ConfigParser:
    """Read and validate the configuration file, exiting if it is unusable."""
    config = configparser.ConfigParser(strict=True)
    try:
        with path.open(encoding="utf-8") as config_fh:
            config.read_file(config_fh)
    except OSError as exc:
        logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode.get(exc.errno or 0))
        raise SystemExit(-1) from exc
    except configparser.Error as exc:
        msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
        logger.critical(f"Invalid configuration, {msg}")
        raise SystemExit(-1) from exc

    if "irc" not in config:
        logger.critical('Invalid configuration, missing section "irc"')
        raise SystemExit(-1)
    return config


def create_client(irc_config: configparser.SectionProxy) -> IRCClient:
    """Create a client that joins the configured channels and traces every unhandled line."""
    client = IRCClient.from_config(irc_config)
    channels = [channel.strip() for channel in irc_config.get("channels", "").split(",") if channel.strip()]

    @client.on(RPL.WELCOME)
    def join_channels(msg: IRCMessage) -> None:
        client.log.info("Registered", nick=msg.own_nick, channels=channels)
        for channel in channels:
            client.join(channel)

    @client.on("*")
    def trace_unhandled(msg: IRCMessage) -> None:
        client.trace(msg.raw)

    return client


async def start_client(config: configparser.ConfigParser) -> None:
    """Run a client session until it is disconnected, by the server or by a signal."""
    client = create_client(config["irc"])

    if "prometheus" in config:
        listen_address = config["prometheus"].get("listen_address", fallback="::")
        listen_port = config["prometheus"].getint("listen_port", fallback=9200)
        prometheus_client.start_http_server(listen_port, addr=listen_address, registry=client.metrics_registry)
        logger.info("Listening for Prometheus HTTP", listen_address=listen_address, listen_port=listen_port)

    await client.connect()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, client.disconnect)

    await client.wait()


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point.

    Exits with -1 when the configuration is unusable, and with -2 when the
    connection (or the Prometheus listener) could not be set up.
    """
    options = parse_args(argv)

    configure_logging(options.log_format, options.trace_file)
    configure_log_levels({}, options.log_level or logging.INFO)
    logger.info("Starting ircsession", config_file=str(options.config_file), version=__version__)

    config = load_config(options.config_file)
    if "loggers" in config:
        try:
            configure_log_levels(config["loggers"], options.log_level)
        except ValueError as exc:
            logger.critical(f"Invalid configuration, {exc}")
            raise SystemExit(-1) from exc
    if options.nick:
        config["irc"]["nick"] = options.nick

    try:
        asyncio.run(start_client(config))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        logger.critical(f"System error: {exc.strerror or exc}", errno=errno.errorcode.get(exc.errno or 0))
        raise SystemExit(-2) from exc
