"""Merge per-kind batch results into the published server list."""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from a2sapi.db import GAME_UNSPECIFIED
from a2sapi.directory import CountryInfo
from a2sapi.filters import QueryFilter
from a2sapi.protocol import PlayerInfo, ServerInfo, split_host

logger = logging.getLogger(__name__)

RETRIEVAL_DATE_FORMAT = "%a %b %d %H:%M:%S %Y %Z"


class EmptyInfo:
    """Stands in for ServerInfo when info was skipped on purpose; serializes to {}."""

    def to_dict(self) -> Dict[str, Any]:
        return {}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, EmptyInfo)

    def __hash__(self) -> int:
        return hash(EmptyInfo)

    def __repr__(self) -> str:
        return "EmptyInfo()"


EMPTY_INFO = EmptyInfo()


@dataclass
class AssembledServer:
    address: str  # ip:game_port when the host advertises a game port, else the query host
    ip: str
    port: int
    info: Union[ServerInfo, EmptyInfo]
    players: List[PlayerInfo] = field(default_factory=list)
    rules: Dict[str, str] = field(default_factory=dict)
    server_id: int = 0
    location: Optional[CountryInfo] = None
    query_host: str = ""

    @property
    def real_players(self) -> List[PlayerInfo]:
        """Players with a name; clients still connecting are listed nameless."""
        return [p for p in self.players if p.name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "address": self.address,
            "ip": self.ip,
            "port": self.port,
            "location": self.location.to_dict() if self.location is not None else None,
            "info": self.info.to_dict(),
            "players": [p.to_dict() for p in self.players],
            "real_players": {
                "count": len(self.real_players),
                "players": [p.to_dict() for p in self.real_players],
            },
            "rules": dict(self.rules),
        }


@dataclass
class ServerList:
    retrieved_at: float
    servers: List[AssembledServer] = field(default_factory=list)
    failed_servers: List[str] = field(default_factory=list)

    @property
    def server_count(self) -> int:
        return len(self.servers)

    @property
    def failed_count(self) -> int:
        return len(self.failed_servers)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot shape; key order is part of the output format."""
        return {
            "retrieval_date": time.strftime(RETRIEVAL_DATE_FORMAT, time.localtime(self.retrieved_at)),
            "timestamp": int(self.retrieved_at),
            "server_count": self.server_count,
            "servers": [s.to_dict() for s in self.servers],
            "failed_count": self.failed_count,
            "failed_servers": list(self.failed_servers),
        }


def _game_for(info: Union[ServerInfo, EmptyInfo], game: Optional[str]) -> str:
    if game:
        return game
    if isinstance(info, ServerInfo) and info.folder:
        return info.folder
    return GAME_UNSPECIFIED


async def build_server_list(
    query_filter: QueryFilter,
    hosts: Sequence[str],
    infos: Mapping[str, ServerInfo],
    players: Mapping[str, List[PlayerInfo]],
    rules: Mapping[str, Dict[str, str]],
    directory,
    game: Optional[str] = None,
) -> ServerList:
    """
    A host succeeds when every kind the filter does not skip is present; skipped kinds
    are filled with empty values. Successful hosts get server IDs and location from
    directory (called sequentially); the rest are listed by address in failed_servers.
    """
    query_filter.validate()
    sl = ServerList(retrieved_at=time.time())
    hosts_games: Dict[str, str] = {}

    for host in hosts:
        info_ok = query_filter.ignore_info or host in infos
        players_ok = query_filter.ignore_players or host in players
        rules_ok = query_filter.ignore_rules or host in rules
        if not (info_ok and players_ok and rules_ok):
            sl.failed_servers.append(host)
            continue

        info = EMPTY_INFO if query_filter.ignore_info else infos[host]
        try:
            ip, port = split_host(host)
        except ValueError:
            sl.failed_servers.append(host)
            continue
        address = host
        game_port = info.game_port if isinstance(info, ServerInfo) else None
        if game_port:
            # Clients connect to the game port, not the query port
            address = f"[{ip}]:{game_port}" if ":" in ip else f"{ip}:{game_port}"

        server = AssembledServer(
            address=address,
            ip=ip,
            port=port,
            info=info,
            players=[] if query_filter.ignore_players else list(players[host] or []),
            rules={} if query_filter.ignore_rules else dict(rules[host] or {}),
            query_host=host,
        )
        server.location = await directory.lookup_country(ip)
        hosts_games[address] = _game_for(info, game)
        sl.servers.append(server)

    if hosts_games:
        await directory.record_observed_hosts(hosts_games)
        ids = await directory.get_or_assign_ids(hosts_games)
        for server in sl.servers:
            server.server_id = ids.get(server.address, 0)

    logger.info("%d servers were successfully queried, %d failed", sl.server_count, sl.failed_count)
    return sl
