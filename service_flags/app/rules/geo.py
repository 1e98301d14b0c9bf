"""
IP to country resolution for ip_based conditions.
"""

from typing import Optional

import geoip2.database
import geoip2.errors

from shared.logging import get_logger


class IPCountryResolver:
    """Looks up ISO country codes from a MaxMind country database.

    Without a database path every lookup returns None, which makes
    ip_based conditions fall back to user-supplied fields only.
    """

    def __init__(self, database_path: Optional[str] = None):
        self.database_path = database_path
        self.logger = get_logger("flags.geo")
        self._reader: Optional[geoip2.database.Reader] = None

    def open(self) -> None:
        if self.database_path is None or self._reader is not None:
            return
        try:
            self._reader = geoip2.database.Reader(self.database_path)
            self.logger.info("GeoIP database loaded", path=self.database_path)
        except (OSError, ValueError) as e:
            self.logger.error("Failed to load GeoIP database", path=self.database_path, error=str(e))

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None

    def lookup(self, ip) -> Optional[str]:
        if self._reader is None or ip is None:
            return None
        try:
            return self._reader.country(str(ip)).country.iso_code
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
