"""Fan-out, result merging and retry rounds with a scripted query function."""
import asyncio
from collections import Counter

from a2s_fakes import SAMPLE_INFO, start_host
from a2sapi.batch import BatchResult, collect, query_batch, retry_failed
from a2sapi.protocol import MalformedPacket, NoData, NoInfo, NoPlayers, NoRules, RequestKind


class ScriptedQuery:
    """
    Replies per host from a script: a list of outcomes consumed one per call
    (an exception instance is raised, anything else returned). The last outcome repeats.
    """

    def __init__(self, script, delay: float = 0.0):
        self.script = script
        self.delay = delay
        self.calls = Counter()
        self.in_flight = 0
        self.peak = 0

    async def __call__(self, kind, host, timeout):
        self.calls[host] += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.script[host]
            outcome = outcomes[min(self.calls[host], len(outcomes)) - 1]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


class TestBatchResult:
    def test_success_clears_retry(self):
        async def run():
            batch = BatchResult(kind=RequestKind.INFO)
            await batch.add_failure("a:1")
            await batch.add_success("a:1", "info")
            await batch.add_failure("a:1")
            return batch

        batch = asyncio.run(run())
        assert batch.results == {"a:1": "info"}
        assert batch.retry == set()


class TestQueryBatch:
    def test_partition(self):
        fn = ScriptedQuery({
            "a:1": ["info-a"],
            "b:1": [NoInfo("timeout")],
            "c:1": [MalformedPacket("bad")],
        })
        batch = asyncio.run(query_batch(RequestKind.INFO, ["a:1", "b:1", "c:1"], 0.1, query_fn=fn))
        assert batch.results == {"a:1": "info-a"}
        assert batch.retry == {"b:1", "c:1"}

    def test_missing_players_and_rules_are_empty_successes(self):
        fn = ScriptedQuery({"a:1": [NoPlayers("none")], "b:1": [NoRules("none")]})
        players = asyncio.run(query_batch(RequestKind.PLAYERS, ["a:1"], 0.1, query_fn=fn))
        rules = asyncio.run(query_batch(RequestKind.RULES, ["b:1"], 0.1, query_fn=fn))
        assert players.results == {"a:1": []}
        assert rules.results == {"b:1": {}}
        assert not players.retry and not rules.retry

    def test_silent_challenge_is_retried(self):
        fn = ScriptedQuery({"a:1": [NoData("silent")]})
        batch = asyncio.run(query_batch(RequestKind.RULES, ["a:1"], 0.1, query_fn=fn))
        assert batch.retry == {"a:1"}

    def test_duplicate_hosts_queried_once(self):
        fn = ScriptedQuery({"a:1": ["x"]})
        asyncio.run(query_batch(RequestKind.INFO, ["a:1", "a:1"], 0.1, query_fn=fn))
        assert fn.calls["a:1"] == 1

    def test_empty_host_set(self):
        batch = asyncio.run(query_batch(RequestKind.INFO, [], 0.1, query_fn=ScriptedQuery({})))
        assert batch.results == {} and batch.retry == set()

    def test_max_in_flight(self):
        hosts = [f"h{i}:1" for i in range(12)]
        fn = ScriptedQuery({h: ["ok"] for h in hosts}, delay=0.02)
        batch = asyncio.run(query_batch(RequestKind.INFO, hosts, 0.1, max_in_flight=3, query_fn=fn))
        assert len(batch.results) == 12
        assert fn.peak <= 3

    def test_unbounded(self):
        hosts = [f"h{i}:1" for i in range(12)]
        fn = ScriptedQuery({h: ["ok"] for h in hosts}, delay=0.02)
        asyncio.run(query_batch(RequestKind.INFO, hosts, 0.1, max_in_flight=0, query_fn=fn))
        assert fn.peak == 12


class TestRetries:
    def test_late_success_merges(self):
        fn = ScriptedQuery({"a:1": [NoInfo("t"), NoInfo("t"), "late"]})
        recovered = asyncio.run(retry_failed(RequestKind.INFO, ["a:1"], 3, 0.1, query_fn=fn))
        assert recovered == {"a:1": "late"}
        assert fn.calls["a:1"] == 3

    def test_zero_attempts(self):
        fn = ScriptedQuery({"a:1": ["ok"]})
        assert asyncio.run(retry_failed(RequestKind.INFO, ["a:1"], 0, 0.1, query_fn=fn)) == {}
        assert fn.calls["a:1"] == 0

    def test_collect_attempt_count(self):
        fn = ScriptedQuery({
            "ok:1": ["info"],
            "flaky:1": [NoInfo("t"), "info"],
            "dead:1": [NoInfo("t")],
        })
        results = asyncio.run(collect(RequestKind.INFO, ["ok:1", "flaky:1", "dead:1"], retries=2, timeout=0.1, query_fn=fn))
        assert results == {"ok:1": "info", "flaky:1": "info"}
        assert fn.calls == Counter({"ok:1": 1, "flaky:1": 2, "dead:1": 3})

    def test_collect_never_retries_empty_results(self):
        fn = ScriptedQuery({"a:1": [NoPlayers("none")]})
        results = asyncio.run(collect(RequestKind.PLAYERS, ["a:1"], retries=5, timeout=0.1, query_fn=fn))
        assert results == {"a:1": []}
        assert fn.calls["a:1"] == 1


class TestInvalidHosts:
    def test_out_of_range_port_only_fails_that_host(self):
        async def run():
            transport, _, good = await start_host()
            try:
                return good, await query_batch(RequestKind.INFO, [good, "127.0.0.1:70000"], 0.3)
            finally:
                transport.close()

        good, batch = asyncio.run(run())
        assert batch.results == {good: SAMPLE_INFO}
        assert batch.retry == {"127.0.0.1:70000"}
