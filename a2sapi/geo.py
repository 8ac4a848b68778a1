"""Geolocation via free ip-api.com (no key)."""
import asyncio
import ipaddress
import logging
import threading
import time
from collections import deque
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

# ip-api.com free tier: 45 requests per minute
RATE_LIMIT_PER_MINUTE = 45
RATE_WINDOW_SEC = 60.0
IP_API_URL = "http://ip-api.com/json/{ip}?fields=status,countryCode,country,continentCode,regionName,city"

# (country_code, country, continent, region, city)
GeoResult = Tuple[Optional[str], Optional[str], Optional[str], Optional[str], Optional[str]]
NO_GEO: GeoResult = (None, None, None, None, None)

_rate_timestamps: deque = deque()
_rate_lock = threading.Lock()
_sem = asyncio.Semaphore(10)


def _try_acquire_rate_slot() -> bool:
    """Take a slot if we are under the 45/min limit; never waits."""
    with _rate_lock:
        now = time.monotonic()
        while _rate_timestamps and _rate_timestamps[0] < now - RATE_WINDOW_SEC:
            _rate_timestamps.popleft()
        if len(_rate_timestamps) >= RATE_LIMIT_PER_MINUTE:
            return False
        _rate_timestamps.append(now)
        return True


def is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


async def geolocate(ip: str) -> Optional[GeoResult]:
    """
    Return (country_code, country, continent, region, city) for ip.
    NO_GEO for private/unknown addresses; None when the rate limit is spent or the request failed,
    so the caller can try again in a later batch.
    """
    if not is_public_ip(ip):
        return NO_GEO
    if not _try_acquire_rate_slot():
        logger.debug("geolocate %s: rate limit reached, skipping", ip)
        return None
    async with _sem:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                r = await client.get(IP_API_URL.format(ip=ip))
                if r.status_code == 429:
                    logger.warning("ip-api rate limit (429); geolocation paused until the window clears")
                    return None
                if r.status_code != 200:
                    return None
                data = r.json()
                if data.get("status") != "success":
                    return NO_GEO
                return (
                    data.get("countryCode"),
                    data.get("country"),
                    data.get("continentCode"),
                    data.get("regionName"),
                    data.get("city"),
                )
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("geolocate %s: %s", ip, e)
            return None
