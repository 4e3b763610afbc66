"""
Registration core-identity cache.

Holds the authoritative registration lookup document for each plate.
The lookup route writes it; the unlock core only reads it and enforces
the freshness window.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ...config import IDENTITY_CACHE_TTL_HOURS
from ...models.db_models import VehicleIdentityCacheDB, utcnow


class IdentityCache:
    """Read/write access to vehicle_identity_cache."""

    def __init__(self, db: Session, ttl_hours: int = IDENTITY_CACHE_TTL_HOURS):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours)

    def lookup(self, registration: str) -> Optional[Tuple[Dict[str, Any], datetime]]:
        """Return (document, fetched_at) or None when never cached."""
        row = self.db.get(VehicleIdentityCacheDB, registration)
        if row is None:
            return None
        return row.document, row.fetched_at

    def is_fresh(self, fetched_at: datetime, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - fetched_at <= self.ttl

    def store(
        self,
        registration: str,
        document: Dict[str, Any],
        fetched_at: Optional[datetime] = None,
    ) -> VehicleIdentityCacheDB:
        """Insert or replace the cached document for a registration."""
        row = self.db.get(VehicleIdentityCacheDB, registration)
        if row is None:
            row = VehicleIdentityCacheDB(registration=registration)
            self.db.add(row)
        row.document = document
        row.fetched_at = fetched_at or utcnow()
        self.db.flush()
        return row
