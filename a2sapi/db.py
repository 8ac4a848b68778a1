"""SQLite storage for server identities (host + game -> server_id) and cached IP geolocation."""
import aiosqlite
import logging
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Game name used when the game of a host is not known; such hosts get no ID
GAME_UNSPECIFIED = "Unspecified"

# Refresh cached geolocation after 30 days
COUNTRY_CACHE_TTL_SEC = 30 * 24 * 3600

# (country_code, country, continent, region, city)
CountryRow = Tuple[Optional[str], Optional[str], Optional[str], Optional[str], Optional[str]]


async def init_db(db_path: str) -> None:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS servers (
                server_id INTEGER PRIMARY KEY AUTOINCREMENT,
                host TEXT NOT NULL,
                game TEXT NOT NULL,
                first_seen REAL NOT NULL,
                last_seen REAL NOT NULL,
                UNIQUE(host, game)
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_servers_host ON servers(host)")
        await db.execute("""
            CREATE TABLE IF NOT EXISTS countries (
                ip TEXT PRIMARY KEY,
                country_code TEXT,
                country TEXT,
                continent TEXT,
                region TEXT,
                city TEXT,
                looked_up REAL NOT NULL
            )
        """)
        await db.commit()


def _known(hosts_games: Dict[str, str]) -> List[Tuple[str, str]]:
    return [(h, g) for h, g in hosts_games.items() if h and g and g != GAME_UNSPECIFIED]


async def record_observed_hosts(db_path: str, hosts_games: Dict[str, str]) -> int:
    """Insert new (host, game) pairs and bump last_seen of known ones. Returns number of rows inserted."""
    rows = _known(hosts_games)
    if not rows:
        return 0
    now = time.time()
    async with aiosqlite.connect(db_path) as db:
        before = db.total_changes
        await db.executemany(
            "INSERT OR IGNORE INTO servers (host, game, first_seen, last_seen) VALUES (?, ?, ?, ?)",
            [(h, g, now, now) for h, g in rows],
        )
        inserted = db.total_changes - before
        await db.executemany(
            "UPDATE servers SET last_seen = ? WHERE host = ? AND game = ?",
            [(now, h, g) for h, g in rows],
        )
        await db.commit()
    return inserted


async def get_or_assign_ids(db_path: str, hosts_games: Dict[str, str]) -> Dict[str, int]:
    """Return host -> server_id, inserting hosts not seen before. Unknown games map to 0."""
    out = {h: 0 for h in hosts_games}
    rows = _known(hosts_games)
    if not rows:
        return out
    now = time.time()
    async with aiosqlite.connect(db_path) as db:
        await db.executemany(
            "INSERT OR IGNORE INTO servers (host, game, first_seen, last_seen) VALUES (?, ?, ?, ?)",
            [(h, g, now, now) for h, g in rows],
        )
        await db.commit()
        for host, game in rows:
            async with db.execute(
                "SELECT server_id FROM servers WHERE host = ? AND game = ? LIMIT 1",
                (host, game),
            ) as cur:
                row = await cur.fetchone()
            if row:
                out[host] = int(row[0])
    return out


async def get_ids_for_hosts(db_path: str, hosts: Iterable[str]) -> List[Dict[str, Any]]:
    """Servers whose host contains any of the given strings (e.g. an IP without port)."""
    out: List[Dict[str, Any]] = []
    seen = set()
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        for h in hosts:
            if not h:
                continue
            async with db.execute(
                "SELECT server_id, host, game FROM servers WHERE host LIKE ? ORDER BY server_id",
                (f"%{h}%",),
            ) as cur:
                async for row in cur:
                    if row["server_id"] in seen:
                        continue
                    seen.add(row["server_id"])
                    out.append({"server_id": row["server_id"], "host": row["host"], "game": row["game"]})
    return out


async def get_hosts_for_ids(db_path: str, ids: Iterable[int]) -> Dict[str, str]:
    """host -> game for the given server IDs; unknown IDs are skipped."""
    out: Dict[str, str] = {}
    async with aiosqlite.connect(db_path) as db:
        for server_id in ids:
            async with db.execute(
                "SELECT host, game FROM servers WHERE server_id = ? LIMIT 1",
                (server_id,),
            ) as cur:
                row = await cur.fetchone()
            if row:
                out[row[0]] = row[1]
    return out


async def get_cached_country(db_path: str, ip: str) -> Optional[CountryRow]:
    """Cached geolocation for ip, or None if missing or older than COUNTRY_CACHE_TTL_SEC."""
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(
            "SELECT country_code, country, continent, region, city, looked_up FROM countries WHERE ip = ?",
            (ip,),
        ) as cur:
            row = await cur.fetchone()
    if not row:
        return None
    if time.time() - (row[5] or 0) > COUNTRY_CACHE_TTL_SEC:
        return None
    return (row[0], row[1], row[2], row[3], row[4])


async def store_country(db_path: str, ip: str, country: CountryRow) -> None:
    country_code, name, continent, region, city = country
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO countries (ip, country_code, country, continent, region, city, looked_up)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(ip) DO UPDATE SET
                country_code = excluded.country_code,
                country = excluded.country,
                continent = excluded.continent,
                region = excluded.region,
                city = excluded.city,
                looked_up = excluded.looked_up
            """,
            (ip, country_code, name, continent, region, city, time.time()),
        )
        await db.commit()
