"""HTTP API with Swagger for the polled server list."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query

from a2sapi.config import Config
from a2sapi.daemon import Poller
from a2sapi.db import get_hosts_for_ids, get_ids_for_hosts
from a2sapi.directory import Directory
from a2sapi.filters import ConfigurationError, QueryFilter
from a2sapi.snapshot import read_snapshot

logger = logging.getLogger(__name__)

# On-demand queries are for a handful of hosts, not for the whole list
MAX_QUERY_HOSTS = 64


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def create_app(config: Config, poller: Optional[Poller] = None) -> FastAPI:
    app = FastAPI(
        title="A2S Server API",
        description="Game server info, players and rules gathered over the Source query protocol",
        version="0.1.0",
    )
    if poller is None:
        poller = Poller(config, Directory(config.database_path, geo_lookup=config.geo_lookup))

    def _snapshot() -> Dict[str, Any]:
        data = read_snapshot(config.snapshot_path)
        if data is None:
            raise HTTPException(status_code=503, detail="No server list retrieved yet")
        return data

    @app.get("/servers", tags=["Servers"])
    async def servers(
        game: Optional[str] = Query(None, description="Filter by game folder (info.folder), case-insensitive"),
        country: Optional[str] = Query(None, description="Filter by country code, e.g. US"),
    ):
        """Latest server list. Response: { retrieval_date, timestamp, server_count, servers, failed_count, failed_servers }."""
        data = _snapshot()
        if game is None and country is None:
            return data
        out = []
        for s in data.get("servers", []):
            if game is not None and (s.get("info") or {}).get("folder", "").lower() != game.lower():
                continue
            if country is not None and ((s.get("location") or {}).get("country_code") or "").upper() != country.upper():
                continue
            out.append(s)
        data["servers"] = out
        data["server_count"] = len(out)
        return data

    @app.get(
        "/servers/{address}",
        tags=["Servers"],
        summary="Get one server by address",
        responses={200: {"description": "Server details"}, 404: {"description": "Server not found"}},
    )
    async def server_by_address(address: str):
        """Match on the published address (ip:game_port) or the IP alone."""
        for s in _snapshot().get("servers", []):
            if address in (s.get("address"), s.get("ip")):
                return s
        raise HTTPException(status_code=404, detail="Server not found")

    @app.get("/serverIDs", tags=["Identity"])
    async def server_ids(
        hosts: str = Query(..., description="Comma-separated hosts or IPs (substring match)"),
    ):
        """Server IDs known for the given hosts: { server_count, servers: [{server_id, host, game}] }."""
        found = await get_ids_for_hosts(config.database_path, _split_csv(hosts))
        return {"server_count": len(found), "servers": found}

    @app.get("/query", tags=["Query"])
    async def query_now(
        hosts: Optional[str] = Query(None, description="Comma-separated ip:port query hosts"),
        ids: Optional[str] = Query(None, description="Comma-separated server IDs"),
        ignore: Optional[str] = Query(None, description="Comma-separated kinds to skip: info, players, rules"),
    ):
        """Query the given hosts (or server IDs) right now and return the assembled list."""
        try:
            targets = [config.parse_host(h) for h in _split_csv(hosts)]
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"invalid host: {e}")
        id_values = _split_csv(ids)
        if id_values:
            try:
                known = await get_hosts_for_ids(config.database_path, [int(i) for i in id_values])
            except ValueError:
                raise HTTPException(status_code=400, detail="ids must be integers")
            targets.extend(known)
        targets = list(dict.fromkeys(targets))
        if not targets:
            raise HTTPException(status_code=400, detail="No hosts to query")
        if len(targets) > MAX_QUERY_HOSTS:
            raise HTTPException(status_code=400, detail=f"At most {MAX_QUERY_HOSTS} hosts per query")
        try:
            query_filter = QueryFilter.from_names(_split_csv(ignore))
            server_list = await poller.run_once(query_filter, hosts=targets)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return server_list.to_dict()

    return app
