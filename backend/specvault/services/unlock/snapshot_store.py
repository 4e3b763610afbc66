"""
Snapshot Store

Content-addressed cache of fetched spec documents. Each row is one
generation of a registration's spec, tagged with the fingerprint of the
vehicle it describes. Rows are never updated or deleted.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import SpecSnapshotDB, utcnow


def derive_engine_code(spec_document: Optional[Dict[str, Any]]) -> Optional[str]:
    """Engine code carried by a spec document, if any."""
    engine = (spec_document or {}).get("engine") or {}
    code = engine.get("engine_code")
    return str(code) if code else None


class SnapshotStore:
    """Append-only access to vehicle_spec_snapshots."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def most_recent(self, registration: str) -> Optional[SpecSnapshotDB]:
        """Latest snapshot for a registration by creation time."""
        return (
            self.db.query(SpecSnapshotDB)
            .filter(SpecSnapshotDB.registration == registration)
            .order_by(SpecSnapshotDB.created_at.desc(), SpecSnapshotDB.id.desc())
            .first()
        )

    def create(
        self,
        registration: str,
        spec_document: Dict[str, Any],
        fingerprint: str,
        engine_code: Optional[str] = None,
        tyre_data: Optional[List[Dict[str, Any]]] = None,
    ) -> SpecSnapshotDB:
        """Insert a new snapshot. Deduplication is the caller's job."""
        snapshot = SpecSnapshotDB(
            registration=registration,
            spec_json=spec_document,
            fingerprint=fingerprint,
            engine_code=engine_code,
            tyre_data=tyre_data,
            created_at=self.clock(),
        )
        self.db.add(snapshot)
        self.db.flush()  # Get ID without committing
        return snapshot

    def get(self, snapshot_id: int) -> Optional[SpecSnapshotDB]:
        return self.db.get(SpecSnapshotDB, snapshot_id)
