#!/usr/bin/env python3
"""
WorldMorse command line.

    worldmorse serve                       run the relay
    worldmorse encode "CQ CQ DE JA1ABC"    text -> Morse
    worldmorse decode "-.-. --.- / -.-."   Morse -> text
    worldmorse send --channel 7.050 "CQ"   submit one CW message
    worldmorse monitor --channel 7.050     follow a channel
"""
import argparse
import asyncio
import os
import signal
import sys
import time
from datetime import datetime

from . import __version__, morse
from .client import RelayClient
from .config_loader import Config
from .errors import RelayClientError
from .keyer import KeyerTiming, keying_schedule
from .logging_setup import get_logger, set_station, setup_logging
from .models import Message, Station, channel_for_frequency
from .server import create_relay_server
from .sync import ClientSync, ConnectionState

logger = get_logger(__name__)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM set stop_event; a second signal after 5s forces exit."""
    loop = asyncio.get_running_loop()
    _first_signal_time = None

    def handle_shutdown(signum=None, frame=None):
        nonlocal _first_signal_time
        logger.info("Signal %s received, stopping ..", signum or 'SIGINT')
        if stop_event.is_set():
            now = time.monotonic()
            # asyncio can double-fire
            if _first_signal_time and (now - _first_signal_time) < 5.0:
                logger.debug(
                    "Ignoring duplicate signal (%.1fs after first)",
                    now - _first_signal_time,
                )
                return
            elapsed = now - _first_signal_time if _first_signal_time else 0
            logger.warning(
                "Force shutdown - second signal received after %.0fs",
                elapsed,
            )
            os._exit(1)
        _first_signal_time = time.monotonic()
        stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, handle_shutdown)
        loop.add_signal_handler(signal.SIGTERM, handle_shutdown)
        signal_method = "asyncio"
    except (NotImplementedError, RuntimeError) as e:
        logger.warning("Could not set asyncio signal handlers: %s", e)
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)
        signal_method = "traditional"

    logger.debug("Signal handling: %s", signal_method)


def resolve_channel(args) -> str:
    if args.frequency is not None:
        return channel_for_frequency(args.frequency)
    return args.channel or ""


def format_message(message: Message) -> str:
    ts = datetime.fromtimestamp(message.ts / 1000).strftime("%H:%M:%S")
    target = f" -> {message.to_callsign}" if message.to_callsign else ""
    text = message.text_preview or morse.decode(message.morse).strip()
    return f"{ts} {message.from_callsign}{target}: {message.morse}  [{text}]"


def format_schedule(schedule: list[tuple[bool, float]]) -> str:
    """Key-down segments as +ms, silences as -ms, then the total"""
    parts = [f"{'+' if down else '-'}{ms:g}" for down, ms in schedule]
    total = sum(ms for _, ms in schedule)
    return f"{' '.join(parts)}  ({total:g} ms)"


# ── Subcommands ───────────────────────────────────────────────────────

async def serve(cfg: Config) -> int:
    server = create_relay_server(cfg)
    await server.start_server()

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    await stop_event.wait()

    try:
        await asyncio.wait_for(server.stop_server(), timeout=8.0)
    except asyncio.TimeoutError:
        logger.warning("Relay stop timeout")
    logger.info("Shutdown complete")
    return 0


async def send(cfg: Config, callsign: str, channel: str, text: str, to_callsign: str | None) -> int:
    signal_code = morse.encode(text)
    if not signal_code.replace(morse.WORD_SEPARATOR, "").strip():
        logger.error("Nothing to send: no encodable characters in %r", text)
        return 1

    client = RelayClient(cfg.client.server_url, timeout=cfg.client.request_timeout_s)
    try:
        await client.register_station(callsign)
        message = await client.send_cw(
            callsign, channel, signal_code, text_preview=text.upper(), to_callsign=to_callsign
        )
    except RelayClientError as e:
        logger.error("Send failed: %s", e)
        return 1
    finally:
        await client.close()

    logger.info("📡 Sent %s on %s: %s", message.id, message.channel, message.morse)
    return 0


async def monitor(cfg: Config, callsign: str, channel: str, use_push: bool) -> int:
    client = RelayClient(cfg.client.server_url, timeout=cfg.client.request_timeout_s)
    last_stations: list[str] = []

    def on_messages(messages: list[Message]):
        for message in messages:
            print(format_message(message), flush=True)

    def on_stations(stations: list[Station]):
        nonlocal last_stations
        calls = sorted(s.callsign for s in stations)
        if calls != last_stations:
            last_stations = calls
            logger.info("📻 Online on %s: %s", channel, ", ".join(calls) or "-")

    def on_status(state: ConnectionState):
        logger.info("Push stream %s", state.value)

    sync = ClientSync.from_config(
        client, callsign, channel, cfg.client,
        on_messages=on_messages,
        on_stations=on_stations,
        on_status=on_status,
        use_push=use_push,
    )

    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    await sync.start()
    try:
        await stop_event.wait()
    finally:
        await sync.stop()
        await client.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="worldmorse",
        description="Morse code relay for amateur radio operators",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", help="Path to config JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", help="Also write log output to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    serve_p = sub.add_parser("serve", help="Run the relay server")
    serve_p.add_argument("--host", help="Bind address (overrides HOST)")
    serve_p.add_argument("--port", type=int, help="Listen port (overrides PORT)")

    encode_p = sub.add_parser("encode", help="Encode text to Morse")
    encode_p.add_argument("text", nargs="+")
    encode_p.add_argument("--timing", action="store_true",
                          help="Also print the keying schedule (DOT_MS from config)")

    decode_p = sub.add_parser("decode", help="Decode Morse to text")
    decode_p.add_argument("code", nargs="+")

    for name, help_text in (("send", "Send one CW message"), ("monitor", "Follow a channel")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--server", help="Relay URL (overrides SERVER_URL)")
        p.add_argument("--callsign", help="Own call-sign (overrides CALL_SIGN)")
        group = p.add_mutually_exclusive_group(required=True)
        group.add_argument("--channel", help="Channel key")
        group.add_argument("--frequency", type=float, help="Dial frequency in MHz")
        if name == "send":
            p.add_argument("--to", dest="to_callsign", help="Addressee call-sign")
            p.add_argument("text", nargs="+")
        else:
            p.add_argument("--poll-only", action="store_true", help="Do not open a push stream")

    return parser


def run(argv: list[str] | None = None) -> int:
    """Entry point for the worldmorse CLI."""
    args = build_parser().parse_args(argv)

    if args.command == "encode":
        code = morse.encode(" ".join(args.text))
        print(code)
        if args.timing:
            timing = KeyerTiming.from_config(Config.load(args.config).keyer)
            print(format_schedule(keying_schedule(code, timing)))
        return 0
    if args.command == "decode":
        print(morse.decode(" ".join(args.code)))
        return 0

    is_dev = os.getenv("WORLDMORSE_ENV") == "dev"
    setup_logging(
        verbose=args.verbose or is_dev,
        log_file=args.log_file,
        simple_format=args.command != "serve",
    )
    if is_dev:
        logger.info("*** DEV environment detected ***")

    cfg = Config.load(args.config)

    if args.command == "serve":
        if args.host:
            cfg.relay.host = args.host
        if args.port:
            cfg.relay.port = args.port
        coro = serve(cfg)
    else:
        if args.server:
            cfg.client.server_url = args.server
        callsign = args.callsign or cfg.call_sign
        set_station(callsign.upper())
        channel = resolve_channel(args)
        if args.command == "send":
            if not callsign:
                logger.error("A call-sign is required to send (--callsign or CALL_SIGN)")
                return 2
            coro = send(cfg, callsign, channel, " ".join(args.text), args.to_callsign)
        else:
            coro = monitor(cfg, callsign, channel, use_push=not args.poll_only)

    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Manually stopped with Ctrl+C")
        return 0
    except Exception as e:
        logger.exception("Unexpected error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(run())
