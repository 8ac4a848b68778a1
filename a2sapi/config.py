"""Load config from YAML."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from a2sapi.filters import QueryFilter
from a2sapi.protocol import parse_port, split_host

DEFAULT_QUERY_PORT = 27015


@dataclass
class Config:
    http_host: str = "0.0.0.0"
    http_port: int = 40081
    database_path: str = "data/servers.db"
    snapshot_path: str = "data/servers.json"
    hosts: List[str] = field(default_factory=list)
    hosts_file: str = ""
    game: str = ""
    query_timeout_seconds: float = 3.0
    info_retries: int = 3
    players_retries: int = 2
    rules_retries: int = 2
    max_in_flight: int = 256
    scan_interval_seconds: int = 60
    initial_delay_seconds: int = 7
    ignore_info: bool = False
    ignore_players: bool = False
    ignore_rules: bool = False
    geo_lookup: bool = True

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        if path is None:
            path = os.environ.get("A2SAPI_CONFIG", "config.yaml")
        path = Path(path)
        if not path.exists() and path.name == "config.yaml":
            alt = path.parent / "config.example.yaml"
            if alt.exists():
                path = alt
        if not path.exists():
            return cls()
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(
            http_host=data.get("http_host", "0.0.0.0"),
            http_port=data.get("http_port", 40081),
            database_path=data.get("database_path", "data/servers.db"),
            snapshot_path=data.get("snapshot_path", "data/servers.json"),
            hosts=[str(h) for h in data.get("hosts") or []],
            hosts_file=data.get("hosts_file") or "",
            game=data.get("game") or "",
            query_timeout_seconds=float(data.get("query_timeout_seconds", 3.0)),
            info_retries=int(data.get("info_retries", 3)),
            players_retries=int(data.get("players_retries", 2)),
            rules_retries=int(data.get("rules_retries", 2)),
            max_in_flight=int(data.get("max_in_flight", 256)),
            scan_interval_seconds=int(data.get("scan_interval_seconds", 60)),
            initial_delay_seconds=int(data.get("initial_delay_seconds", 7)),
            ignore_info=bool(data.get("ignore_info", False)),
            ignore_players=bool(data.get("ignore_players", False)),
            ignore_rules=bool(data.get("ignore_rules", False)),
            geo_lookup=bool(data.get("geo_lookup", True)),
        )

    def query_filter(self) -> QueryFilter:
        return QueryFilter(
            ignore_info=self.ignore_info,
            ignore_players=self.ignore_players,
            ignore_rules=self.ignore_rules,
        )

    def retries_for(self, kind) -> int:
        return {
            "info": self.info_retries,
            "players": self.players_retries,
            "rules": self.rules_retries,
        }[getattr(kind, "value", kind)]

    def parse_host(self, s: str) -> str:
        """Return 'ip:port' for 'ip:port', 'ip' or '[v6]:port' (default query port 27015)."""
        s = s.strip()
        if s.startswith("["):
            if "]:" in s:
                split_host(s)
                return s
            return f"{s}:{DEFAULT_QUERY_PORT}"
        if s.count(":") == 1:
            host, _, port = s.rpartition(":")
            return f"{host.strip()}:{parse_port(port)}"
        if ":" in s:
            return f"[{s}]:{DEFAULT_QUERY_PORT}"
        return f"{s}:{DEFAULT_QUERY_PORT}"
