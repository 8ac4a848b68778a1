"""Server identity storage, the country cache and the Directory wrapper."""
import asyncio
import time

import aiosqlite

from a2sapi import db
from a2sapi.directory import CountryInfo, Directory
from a2sapi.geo import NO_GEO, geolocate, is_public_ip

DALLAS = ("US", "United States", "NA", "Texas", "Dallas")


def _init(tmp_path) -> str:
    path = str(tmp_path / "data" / "servers.db")
    asyncio.run(db.init_db(path))
    return path


class TestSchema:
    def test_init_db_is_repeatable(self, tmp_path):
        path = _init(tmp_path)
        asyncio.run(db.init_db(path))

        async def columns():
            async with aiosqlite.connect(path) as conn:
                async with conn.execute("PRAGMA table_info(servers)") as cur:
                    return [row[1] for row in await cur.fetchall()]

        assert asyncio.run(columns()) == ["server_id", "host", "game", "first_seen", "last_seen"]


class TestServerIds:
    def test_record_observed_hosts(self, tmp_path):
        path = _init(tmp_path)
        hosts = {"192.0.2.1:27960": "baseq3", "192.0.2.2:27960": "baseq3", "192.0.2.3:27015": db.GAME_UNSPECIFIED}
        assert asyncio.run(db.record_observed_hosts(path, hosts)) == 2
        assert asyncio.run(db.record_observed_hosts(path, hosts)) == 0

    def test_ids_are_stable(self, tmp_path):
        path = _init(tmp_path)
        first = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.1:27960": "baseq3", "192.0.2.2:27960": "baseq3"}))
        second = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.2:27960": "baseq3", "192.0.2.1:27960": "baseq3"}))
        assert first == second
        assert sorted(first.values()) == [1, 2]

    def test_same_host_other_game_gets_new_id(self, tmp_path):
        path = _init(tmp_path)
        a = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.1:27015": "csgo"}))
        b = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.1:27015": "tf"}))
        assert a["192.0.2.1:27015"] != b["192.0.2.1:27015"]

    def test_unspecified_game_has_no_id(self, tmp_path):
        path = _init(tmp_path)
        ids = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.1:27015": db.GAME_UNSPECIFIED}))
        assert ids == {"192.0.2.1:27015": 0}

    def test_lookup_both_ways(self, tmp_path):
        path = _init(tmp_path)
        ids = asyncio.run(db.get_or_assign_ids(path, {"192.0.2.1:27960": "baseq3", "198.51.100.4:27015": "csgo"}))
        found = asyncio.run(db.get_ids_for_hosts(path, ["192.0.2.1", "", "192.0.2.1:27960"]))
        assert found == [{"server_id": ids["192.0.2.1:27960"], "host": "192.0.2.1:27960", "game": "baseq3"}]
        hosts = asyncio.run(db.get_hosts_for_ids(path, [ids["198.51.100.4:27015"], 999]))
        assert hosts == {"198.51.100.4:27015": "csgo"}


class TestCountryCache:
    def test_store_and_get(self, tmp_path):
        path = _init(tmp_path)
        assert asyncio.run(db.get_cached_country(path, "8.8.8.8")) is None
        asyncio.run(db.store_country(path, "8.8.8.8", DALLAS))
        assert asyncio.run(db.get_cached_country(path, "8.8.8.8")) == DALLAS

    def test_expired_entry(self, tmp_path):
        path = _init(tmp_path)

        async def store_old():
            async with aiosqlite.connect(path) as conn:
                await conn.execute(
                    "INSERT INTO countries (ip, country_code, country, continent, region, city, looked_up) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    ("8.8.8.8", *DALLAS, time.time() - db.COUNTRY_CACHE_TTL_SEC - 60),
                )
                await conn.commit()

        asyncio.run(store_old())
        assert asyncio.run(db.get_cached_country(path, "8.8.8.8")) is None


class TestDirectory:
    def test_cached_country(self, tmp_path):
        path = _init(tmp_path)
        asyncio.run(db.store_country(path, "8.8.8.8", DALLAS))
        directory = Directory(path, geo_lookup=False)
        assert asyncio.run(directory.lookup_country("8.8.8.8")) == CountryInfo(*DALLAS)

    def test_no_lookup_without_cache(self, tmp_path):
        directory = Directory(_init(tmp_path), geo_lookup=False)
        assert asyncio.run(directory.lookup_country("8.8.8.8")) is None

    def test_private_address_cached_as_unknown(self, tmp_path):
        path = _init(tmp_path)
        directory = Directory(path, geo_lookup=True)
        assert asyncio.run(directory.lookup_country("10.0.0.5")) is None
        assert asyncio.run(db.get_cached_country(path, "10.0.0.5")) == NO_GEO

    def test_storage_failure_degrades(self, tmp_path):
        directory = Directory(str(tmp_path / "missing" / "servers.db"), geo_lookup=False)
        hosts = {"192.0.2.1:27960": "baseq3"}
        assert asyncio.run(directory.get_or_assign_ids(hosts)) == {"192.0.2.1:27960": 0}
        assert asyncio.run(directory.record_observed_hosts(hosts)) is None
        assert asyncio.run(directory.lookup_country("8.8.8.8")) is None


class TestGeo:
    def test_public_ip(self):
        assert is_public_ip("8.8.8.8")
        assert not is_public_ip("192.168.1.10")
        assert not is_public_ip("127.0.0.1")
        assert not is_public_ip("not an ip")

    def test_private_ip_skips_request(self):
        assert asyncio.run(geolocate("192.168.1.10")) == NO_GEO
