"""
Poller daemon: one cycle = load hosts, query players, rules and info (skipping filtered kinds),
assemble the server list, write the snapshot.

Each cycle:
  1. Load the host list (config hosts + hosts file), ordered and deduplicated.
  2. Players: challenge + A2S_PLAYER for every host, retried players_retries times.
  3. Rules: challenge + A2S_RULES for every host, retried rules_retries times.
  4. Info: A2S_INFO for every host, retried info_retries times.
  5. Assemble (server IDs + location), write servers.json.
"""
import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from a2sapi.assembler import ServerList, build_server_list
from a2sapi.batch import QueryFn, collect
from a2sapi.client import query
from a2sapi.config import Config
from a2sapi.db import init_db
from a2sapi.directory import Directory
from a2sapi.filters import QueryFilter
from a2sapi.protocol import RequestKind
from a2sapi.snapshot import write_snapshot

logger = logging.getLogger(__name__)

HostSource = Callable[[], Awaitable[List[str]]]
SnapshotSink = Callable[[ServerList], None]


def load_hosts(config: Config) -> List[str]:
    """config.hosts then hosts_file lines ('#' comments allowed), normalised and deduplicated."""
    raw: List[str] = list(config.hosts)
    if config.hosts_file:
        path = Path(config.hosts_file)
        if path.exists():
            for line in path.read_text(encoding="utf-8").splitlines():
                line = line.split("#", 1)[0].strip()
                if line:
                    raw.append(line)
        else:
            logger.warning("hosts_file %s does not exist", path)
    hosts: List[str] = []
    for s in raw:
        if not (s and s.strip()):
            continue
        try:
            hosts.append(config.parse_host(s))
        except ValueError:
            logger.warning("Ignoring invalid host %r", s)
    return list(dict.fromkeys(hosts))


class Poller:
    """Owns the periodic query loop; run_once() is also the entry point for on-demand batches."""

    def __init__(
        self,
        config: Config,
        directory,
        host_source: Optional[HostSource] = None,
        snapshot_sink: Optional[SnapshotSink] = None,
        query_fn: QueryFn = query,
    ) -> None:
        self.config = config
        self.directory = directory
        self.host_source = host_source or self._config_hosts
        self.snapshot_sink = snapshot_sink
        self.query_fn = query_fn
        self.latest: Optional[ServerList] = None
        self._stop = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None

    async def _config_hosts(self) -> List[str]:
        return load_hosts(self.config)

    async def run_once(self, query_filter: Optional[QueryFilter] = None, hosts: Optional[List[str]] = None) -> ServerList:
        """One batch over hosts (default: the host source). Raises ConfigurationError before any I/O."""
        query_filter = query_filter or self.config.query_filter()
        query_filter.validate()
        if hosts is None:
            hosts = await self.host_source()
        hosts = list(dict.fromkeys(hosts))
        logger.info("Starting server query for %d hosts", len(hosts))

        results: Dict[RequestKind, Dict[str, object]] = {k: {} for k in RequestKind}
        for kind in query_filter.kinds():
            results[kind] = await collect(
                kind,
                hosts,
                retries=self.config.retries_for(kind),
                timeout=self.config.query_timeout_seconds,
                max_in_flight=self.config.max_in_flight,
                query_fn=self.query_fn,
            )

        server_list = await build_server_list(
            query_filter,
            hosts,
            infos=results[RequestKind.INFO],
            players=results[RequestKind.PLAYERS],
            rules=results[RequestKind.RULES],
            directory=self.directory,
            game=self.config.game or None,
        )
        self.latest = server_list
        if self.snapshot_sink is not None:
            self.snapshot_sink(server_list)
        return server_list

    async def run_periodic(self, interval: float, initial_delay: float, stop: asyncio.Event) -> None:
        """Run a batch every interval seconds until stop is set. A running batch always finishes."""
        logger.info("Waiting %ss before the first retrieval", initial_delay)
        if await _wait_or_stop(stop, initial_delay):
            return
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("Server query failed: %s", e)
            if await _wait_or_stop(stop, interval):
                break
        logger.info("Poller stopped")

    def start(self) -> "asyncio.Task[None]":
        if self._task is not None and not self._task.done():
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(
            self.run_periodic(self.config.scan_interval_seconds, self.config.initial_delay_seconds, self._stop)
        )
        return self._task

    async def stop(self) -> None:
        """Let the current batch finish, then end the loop."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None


async def _wait_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to seconds; True if stop was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(0.0, seconds))
        return True
    except asyncio.TimeoutError:
        return stop.is_set()


def _run_api_server(config: Config) -> None:
    """Blocking: run HTTP API (for use in a thread)."""
    import uvicorn
    from a2sapi.api import create_app
    app = create_app(config)
    log_level = "warning" if os.environ.get("A2SAPI_NETWORK_DEBUG") else "info"
    uvicorn.run(app, host=config.http_host, port=config.http_port, log_level=log_level)


async def run_daemon(config: Config) -> None:
    """Init DB, start the HTTP API in a thread, then poll every scan_interval_seconds."""
    await init_db(config.database_path)
    config.query_filter().validate()

    api_thread = threading.Thread(target=_run_api_server, args=(config,), daemon=True)
    api_thread.start()
    logger.info("HTTP API on http://%s:%s/docs", config.http_host, config.http_port)

    directory = Directory(config.database_path, geo_lookup=config.geo_lookup)
    poller = Poller(
        config,
        directory,
        snapshot_sink=lambda sl: write_snapshot(config.snapshot_path, sl),
    )
    interval = max(10, config.scan_interval_seconds)
    logger.info("Poller started (interval=%ds, %d configured hosts)", interval, len(load_hosts(config)))
    await poller.run_periodic(interval, config.initial_delay_seconds, asyncio.Event())
