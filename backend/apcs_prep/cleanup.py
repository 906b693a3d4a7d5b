from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import SessionSnapshot
from .settings import settings


def purge_stale_snapshots(db: Session, *, days: int | None = None) -> int:
	# Snapshots nobody has touched within the retention window belong to abandoned sessions
	retention = settings.snapshot_retention_days if days is None else days
	threshold = datetime.utcnow() - timedelta(days=retention)
	res = db.execute(delete(SessionSnapshot).where(SessionSnapshot.updated_at < threshold))
	db.commit()
	return res.rowcount or 0
