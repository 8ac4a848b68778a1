"""Identity and location data attached to assembled servers (SQLite IDs + cached geolocation)."""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import aiosqlite

from a2sapi import db
from a2sapi.geo import NO_GEO, geolocate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountryInfo:
    country_code: Optional[str]
    country: Optional[str]
    continent: Optional[str]
    region: Optional[str]
    city: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "country_code": self.country_code,
            "country": self.country,
            "continent": self.continent,
            "region": self.region,
            "city": self.city,
        }


class Directory:
    """
    Collaborator used by the assembler after fan-in, one call at a time.
    Storage or lookup failures are logged and degrade to absent location / ID 0.
    """

    def __init__(self, db_path: str, geo_lookup: bool = True) -> None:
        self.db_path = db_path
        self.geo_lookup = geo_lookup

    async def lookup_country(self, ip: str) -> Optional[CountryInfo]:
        try:
            row = await db.get_cached_country(self.db_path, ip)
            if row is None and self.geo_lookup:
                row = await geolocate(ip)
                if row is not None:
                    await db.store_country(self.db_path, ip, row)
        except (aiosqlite.Error, OSError) as e:
            logger.warning("country lookup for %s failed: %s", ip, e)
            return None
        if row is None or row == NO_GEO:
            return None
        return CountryInfo(*row)

    async def get_or_assign_ids(self, hosts_games: Dict[str, str]) -> Dict[str, int]:
        try:
            return await db.get_or_assign_ids(self.db_path, hosts_games)
        except (aiosqlite.Error, OSError) as e:
            logger.warning("server ID lookup for %d hosts failed: %s", len(hosts_games), e)
            return {h: 0 for h in hosts_games}

    async def record_observed_hosts(self, hosts_games: Dict[str, str]) -> None:
        try:
            inserted = await db.record_observed_hosts(self.db_path, hosts_games)
        except (aiosqlite.Error, OSError) as e:
            logger.warning("recording %d hosts failed: %s", len(hosts_games), e)
            return
        if inserted:
            logger.info("%d new servers added to the server DB", inserted)
