"""roomrelay - Entry point.

Two commands:

    roomrelay listen [--room CODE]      follow a room, print every payload
    roomrelay send ROOM PAYLOAD         append one message to a room

All other knobs come from the environment (``RELAY_*``, see
:mod:`roomrelay.config.settings`).
"""

import argparse
import asyncio
import json
import logging
import logging.config
import signal
import sys
from typing import Optional

from roomrelay import __version__
from roomrelay.config.settings import RelaySettings, get_settings
from roomrelay.store.base import DocumentStore
from roomrelay.store.memory import InMemoryDocumentStore
from roomrelay.store.redis_streams import RedisDocumentStore


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(log_level: str = "INFO", log_format: str = "text"):
    """Setup root logging.

    Two modes are supported:
    - ``json``  -- machine-parseable JSON-ish format
    - ``text``  -- human-readable format for local development (default)

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: ``"json"`` or ``"text"``.
    """
    if log_format == "json":
        formatter = {
            "class": "logging.Formatter",
            "format": json.dumps({
                "time": "%(asctime)s",
                "level": "%(levelname)s",
                "module": "%(name)s",
                "message": "%(message)s",
            }),
        }
    else:
        formatter = {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        }
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            }
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }
    logging.config.dictConfig(config)


logger = logging.getLogger(__name__)


def build_store(settings: RelaySettings) -> DocumentStore:
    if settings.store_backend == "memory":
        return InMemoryDocumentStore()
    return RedisDocumentStore(
        settings.redis_url,
        maxlen=settings.stream_maxlen,
        block_ms=settings.listen_block_ms,
        batch_size=settings.listen_batch_size,
        scan_skew_ms=settings.listen_scan_skew_ms,
        instance_id=settings.instance_id,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def listen(
    settings: RelaySettings, shutdown_event: Optional[asyncio.Event] = None
) -> int:
    """Follow one room until SIGINT/SIGTERM (or *shutdown_event*).

    Prints payloads to stdout.  Returns 1 straight away when the store
    cannot be reached.
    """
    from roomrelay.relay.service import RelayService

    metrics = None
    if settings.metrics_enabled:
        from roomrelay.observability.metrics import get_metrics

        metrics = get_metrics(settings.prometheus_port)
        metrics.start_server()
        metrics.set_build_info(__version__, settings.instance_id, settings.environment)

    service = RelayService.from_settings(build_store(settings), settings, metrics=metrics)
    service.on_ready.subscribe(lambda room: print(f"Listening on room {room}", flush=True))
    service.on_message.subscribe(lambda payload: print(payload, flush=True))

    if shutdown_event is None:
        shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        if not await service.initialize():
            await service.shutdown()
            return 1
        await service.run(shutdown_event)
    except Exception as exc:
        logger.critical("Fatal error: %s", exc, exc_info=True)
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return 0 if service.last_fault is None else 1


async def send(settings: RelaySettings, room_code: str, payload: str) -> int:
    """Append one message and print its document id."""
    from roomrelay.relay.writer import append_message

    store = build_store(settings)
    try:
        await store.connect()
    except Exception as exc:
        logger.error("Could not connect to store: %s", exc)
        return 1
    try:
        doc_id = await append_message(
            store, room_code, payload, collection=settings.collection_name
        )
    finally:
        await store.disconnect()

    if doc_id is None:
        return 1
    print(f"Added doc [ {doc_id} ]")
    return 0


def cli(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="roomrelay", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    p_listen = sub.add_parser("listen", help="follow a room and print its messages")
    p_listen.add_argument("--room", help="room code (generated when omitted)")

    p_send = sub.add_parser("send", help="append one message to a room")
    p_send.add_argument("room", help="room code")
    p_send.add_argument("payload", help="message payload")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    if args.command == "listen":
        if args.room:
            settings = settings.model_copy(update={"room_code": args.room})
        return asyncio.run(listen(settings))
    return asyncio.run(send(settings, args.room, args.payload))


if __name__ == "__main__":
    sys.exit(cli())
