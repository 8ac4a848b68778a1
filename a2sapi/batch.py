"""
Concurrent fan-out of one request kind over a host set, and the retry rounds.

One task per host per round. Results land in a BatchResult guarded by a single lock;
NoPlayers/NoRules count as empty successes, every other QueryError queues the host for retry.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, Iterable, List, Optional, Set, TypeVar

from a2sapi.client import DEFAULT_TIMEOUT, query
from a2sapi.protocol import NoPlayers, NoRules, QueryError, RequestKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
QueryFn = Callable[[RequestKind, str, float], Awaitable[object]]

# Bound on simultaneously open exchanges per batch (0 = unbounded)
DEFAULT_MAX_IN_FLIGHT = 256

# Replies that mean "host is up, this data is just not available"
EMPTY_RESULTS = {
    RequestKind.PLAYERS: (NoPlayers, list),
    RequestKind.RULES: (NoRules, dict),
}


@dataclass
class BatchResult(Generic[T]):
    """Successes and retry candidates of one batch; a host is in exactly one of them."""
    kind: RequestKind
    results: Dict[str, T] = field(default_factory=dict)
    retry: Set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def add_success(self, host: str, value: T) -> None:
        async with self.lock:
            self.retry.discard(host)
            self.results[host] = value

    async def add_failure(self, host: str) -> None:
        async with self.lock:
            if host not in self.results:
                self.retry.add(host)


async def query_batch(
    kind: RequestKind,
    hosts: Iterable[str],
    timeout: float = DEFAULT_TIMEOUT,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    query_fn: QueryFn = query,
) -> BatchResult:
    """Query every host concurrently and wait for all of them; never raises for per-host errors."""
    kind = RequestKind(kind)
    batch: BatchResult = BatchResult(kind=kind)
    sem: Optional[asyncio.Semaphore] = asyncio.Semaphore(max_in_flight) if max_in_flight > 0 else None
    empty = EMPTY_RESULTS.get(kind)

    async def one(host: str) -> None:
        try:
            if sem is None:
                value = await query_fn(kind, host, timeout)
            else:
                async with sem:
                    value = await query_fn(kind, host, timeout)
        except QueryError as e:
            if empty is not None and isinstance(e, empty[0]):
                await batch.add_success(host, empty[1]())
                return
            logger.debug("%s %s failed: %s: %s", host, kind.value, type(e).__name__, e)
            await batch.add_failure(host)
            return
        await batch.add_success(host, value)

    host_list = list(dict.fromkeys(hosts))
    if host_list:
        await asyncio.gather(*(asyncio.create_task(one(h)) for h in host_list))
    logger.debug("%s batch: %d ok, %d to retry", kind.value, len(batch.results), len(batch.retry))
    return batch


async def retry_failed(
    kind: RequestKind,
    hosts: Iterable[str],
    max_attempts: int,
    timeout: float = DEFAULT_TIMEOUT,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    query_fn: QueryFn = query,
) -> Dict[str, object]:
    """Re-query failing hosts for up to max_attempts sequential rounds; returns the late successes."""
    recovered: Dict[str, object] = {}
    pending: List[str] = list(dict.fromkeys(hosts))
    for attempt in range(1, max_attempts + 1):
        if not pending:
            break
        batch = await query_batch(kind, pending, timeout, max_in_flight, query_fn)
        recovered.update(batch.results)
        logger.info(
            "%s retry %d/%d: %d recovered, %d still failing",
            RequestKind(kind).value, attempt, max_attempts, len(batch.results), len(batch.retry),
        )
        pending = [h for h in pending if h in batch.retry]
    if pending:
        logger.info("%s: %d hosts failed after %d retries", RequestKind(kind).value, len(pending), max_attempts)
    return recovered


async def collect(
    kind: RequestKind,
    hosts: Iterable[str],
    retries: int,
    timeout: float = DEFAULT_TIMEOUT,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    query_fn: QueryFn = query,
) -> Dict[str, object]:
    """Initial batch plus retry rounds: a host missing from the result was tried retries + 1 times."""
    kind = RequestKind(kind)
    host_list = list(dict.fromkeys(hosts))
    logger.info("Querying %s for %d hosts", kind.value, len(host_list))
    batch = await query_batch(kind, host_list, timeout, max_in_flight, query_fn)
    results: Dict[str, object] = dict(batch.results)
    if batch.retry:
        failed = [h for h in host_list if h in batch.retry]
        results.update(await retry_failed(kind, failed, retries, timeout, max_in_flight, query_fn))
    logger.info("%s: %d/%d hosts answered", kind.value, len(results), len(host_list))
    return results
