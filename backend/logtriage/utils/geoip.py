import logging
import threading
from typing import Dict, Optional

import geoip2.database
import geoip2.errors
from pydantic import BaseModel

logger = logging.getLogger(__name__)

class GeoInfo(BaseModel):
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class GeoIPCache:
    """
    Process-wide memo of IP -> GeoInfo (or None for "not found").
    Entries never expire; concurrent writers of the same key are harmless.
    """

    _MISSING = object()

    def __init__(self, seed: Optional[Dict[str, Optional[GeoInfo]]] = None):
        self._entries: Dict[str, Optional[GeoInfo]] = dict(seed or {})
        self._lock = threading.Lock()

    def get(self, ip: str, default=_MISSING):
        return self._entries.get(ip, default)

    def contains(self, ip: str) -> bool:
        return ip in self._entries

    def put(self, ip: str, info: Optional[GeoInfo]) -> Optional[GeoInfo]:
        with self._lock:
            return self._entries.setdefault(ip, info)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        return len(self._entries)

class GeoIPLocator:
    """GeoIP lookups against a local MaxMind City database."""

    def __init__(self, db_path: Optional[str] = None, cache: Optional[GeoIPCache] = None, reader=None):
        self.db_path = db_path
        self.cache = cache if cache is not None else GeoIPCache()
        self._reader = reader
        self._opened = reader is not None
        self._open_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._reader is not None or bool(self.db_path)

    def _get_reader(self):
        if self._opened:
            return self._reader
        with self._open_lock:
            if not self._opened:
                try:
                    self._reader = geoip2.database.Reader(self.db_path)
                    logger.info("GeoIP database loaded: %s", self.db_path)
                except (OSError, ValueError) as e:
                    logger.warning("Failed to load GeoIP database %s: %s", self.db_path, e)
                    self._reader = None
                self._opened = True
        return self._reader

    def locate(self, ip: Optional[str]) -> Optional[GeoInfo]:
        """Get geolocation for IP; None when unknown or enrichment is disabled."""
        if not ip or not self.enabled:
            return None

        cached = self.cache.get(ip)
        if cached is not GeoIPCache._MISSING:
            return cached

        reader = self._get_reader()
        if reader is None:
            return None

        try:
            response = reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            # not in the database, or not an IP at all; cached as a miss
            return self.cache.put(ip, None)

        info = GeoInfo(
            country=response.country.iso_code or response.country.name,
            city=response.city.name,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
        )
        return self.cache.put(ip, info)

    def close(self):
        if self._reader is not None and hasattr(self._reader, "close"):
            self._reader.close()
