"""Entrypoint: python -m a2sapi daemon | api | query."""
import argparse
import asyncio
import json
import logging
import os
import sys

from a2sapi.api import create_app
from a2sapi.client import query
from a2sapi.config import Config
from a2sapi.daemon import run_daemon
from a2sapi.db import init_db
from a2sapi.protocol import NoPlayers, NoRules, QueryError, RequestKind, ServerInfo

NOISY_LOGGERS = (
    "httpx", "httpcore", "aiosqlite",
    "uvicorn", "uvicorn.error", "uvicorn.access", "uvicorn.default",
    "asyncio",
)


def configure_logging(environ=os.environ) -> None:
    """A2SAPI_DEBUG: debug output for a2sapi only. A2SAPI_NETWORK_DEBUG: same, minus geolocation."""
    debug = bool(environ.get("A2SAPI_DEBUG") or environ.get("A2SAPI_NETWORK_DEBUG"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    if not debug:
        return
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if environ.get("A2SAPI_NETWORK_DEBUG"):
        logging.getLogger("a2sapi.geo").setLevel(logging.WARNING)


configure_logging()


async def _run_query(host: str, kinds: list, timeout: float) -> int:
    """Query one host and print each reply; returns the exit code."""
    status = 0
    for kind in kinds:
        try:
            result = await query(kind, host, timeout)
        except (NoPlayers, NoRules) as e:
            print(f"{kind.value}: none available ({e})")
            continue
        except QueryError as e:
            print(f"{kind.value}: {type(e).__name__}: {e}")
            status = 1
            continue
        if isinstance(result, ServerInfo):
            out = result.to_dict()
        elif isinstance(result, list):
            out = [p.to_dict() for p in result]
        else:
            out = result
        print(f"{kind.value}:")
        print(json.dumps(out, indent=2, ensure_ascii=False))
    return status


def main() -> None:
    parser = argparse.ArgumentParser(description="A2S game server poller and API")
    parser.add_argument(
        "command",
        nargs="?",
        default="daemon",
        choices=["daemon", "api", "query"],
        help="daemon (default): poll + HTTP API; api: HTTP API only; query: query one host",
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Config file path (used for daemon/api)",
    )
    parser.add_argument(
        "--kind",
        default="all",
        choices=["all", "info", "players", "rules"],
        help="Request kind for query. Default: all",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=3.0,
        help="Seconds to wait per exchange (query only). Default: 3",
    )
    args, rest = parser.parse_known_args()

    if args.command == "query":
        if not rest:
            parser.error("query requires host:port, e.g. 192.0.2.10:27015")
        config = Config()
        host = config.parse_host(rest[0])
        kinds = list(RequestKind) if args.kind == "all" else [RequestKind(args.kind)]
        sys.exit(asyncio.run(_run_query(host, kinds, args.timeout)))

    config = Config.load(args.config)

    if args.command == "daemon":
        asyncio.run(run_daemon(config))
    elif args.command == "api":
        import uvicorn
        asyncio.run(init_db(config.database_path))
        app = create_app(config)
        uvicorn.run(
            app,
            host=config.http_host,
            port=config.http_port,
            log_level="info",
        )


if __name__ == "__main__":
    main()
