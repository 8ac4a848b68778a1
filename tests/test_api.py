"""HTTP API over the snapshot and the identity store."""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from a2s_fakes import SAMPLE_INFO, SAMPLE_PLAYERS, SAMPLE_RULES, FakeDirectory
from a2sapi import db
from a2sapi.api import MAX_QUERY_HOSTS, create_app
from a2sapi.assembler import AssembledServer, ServerList
from a2sapi.config import Config
from a2sapi.daemon import Poller
from a2sapi.directory import CountryInfo
from a2sapi.protocol import RequestKind
from a2sapi.snapshot import read_snapshot, write_snapshot


async def _stub_query(kind, host, timeout):
    return {RequestKind.INFO: SAMPLE_INFO, RequestKind.PLAYERS: SAMPLE_PLAYERS, RequestKind.RULES: SAMPLE_RULES}[kind]


@pytest.fixture
def config(tmp_path):
    config = Config(database_path=str(tmp_path / "servers.db"), snapshot_path=str(tmp_path / "servers.json"))
    asyncio.run(db.init_db(config.database_path))
    return config


@pytest.fixture
def client(config):
    poller = Poller(config, FakeDirectory(), query_fn=_stub_query)
    return TestClient(create_app(config, poller=poller))


def _server_list() -> ServerList:
    us = CountryInfo("US", "United States", "NA", "Texas", "Dallas")
    return ServerList(
        retrieved_at=time.time(),
        servers=[
            AssembledServer(
                address="192.0.2.1:27960", ip="192.0.2.1", port=27015, info=SAMPLE_INFO,
                players=SAMPLE_PLAYERS, rules=SAMPLE_RULES, server_id=1, location=us,
            ),
        ],
        failed_servers=["192.0.2.9:27015"],
    )


class TestServers:
    def test_no_snapshot_yet(self, client):
        assert client.get("/servers").status_code == 503

    def test_snapshot(self, client, config):
        write_snapshot(config.snapshot_path, _server_list())
        data = client.get("/servers").json()
        assert data["server_count"] == 1
        assert data["servers"][0]["address"] == "192.0.2.1:27960"
        assert data["failed_servers"] == ["192.0.2.9:27015"]
        assert data == read_snapshot(config.snapshot_path)

    def test_filters(self, client, config):
        write_snapshot(config.snapshot_path, _server_list())
        assert client.get("/servers", params={"game": "BASEQ3", "country": "us"}).json()["server_count"] == 1
        assert client.get("/servers", params={"country": "DE"}).json()["servers"] == []

    def test_by_address(self, client, config):
        write_snapshot(config.snapshot_path, _server_list())
        assert client.get("/servers/192.0.2.1:27960").json()["server_id"] == 1
        assert client.get("/servers/192.0.2.1").json()["server_id"] == 1
        assert client.get("/servers/192.0.2.2").status_code == 404


class TestIdentity:
    def test_server_ids(self, client, config):
        asyncio.run(db.get_or_assign_ids(config.database_path, {"192.0.2.1:27960": "baseq3"}))
        data = client.get("/serverIDs", params={"hosts": "192.0.2.1,198.51.100.1"}).json()
        assert data == {"server_count": 1, "servers": [{"server_id": 1, "host": "192.0.2.1:27960", "game": "baseq3"}]}


class TestQuery:
    def test_query_hosts(self, client):
        data = client.get("/query", params={"hosts": "192.0.2.1:27015,192.0.2.2"}).json()
        assert data["server_count"] == 2
        assert [s["ip"] for s in data["servers"]] == ["192.0.2.1", "192.0.2.2"]

    def test_query_ids(self, client, config):
        ids = asyncio.run(db.get_or_assign_ids(config.database_path, {"192.0.2.1:27960": "baseq3"}))
        data = client.get("/query", params={"ids": str(ids["192.0.2.1:27960"]), "ignore": "players,rules"}).json()
        assert data["server_count"] == 1
        assert data["servers"][0]["players"] == []

    def test_ignore_everything(self, client):
        r = client.get("/query", params={"hosts": "192.0.2.1", "ignore": "info,players,rules"})
        assert r.status_code == 400

    def test_unknown_ignore(self, client):
        assert client.get("/query", params={"hosts": "192.0.2.1", "ignore": "ping"}).status_code == 400

    def test_bad_ids(self, client):
        assert client.get("/query", params={"ids": "one"}).status_code == 400

    def test_nothing_to_query(self, client):
        assert client.get("/query").status_code == 400

    def test_too_many_hosts(self, client):
        hosts = ",".join(f"192.0.2.{i}" for i in range(MAX_QUERY_HOSTS + 1))
        assert client.get("/query", params={"hosts": hosts}).status_code == 400

    def test_out_of_range_port(self, client):
        assert client.get("/query", params={"hosts": "192.0.2.1:70000"}).status_code == 400
