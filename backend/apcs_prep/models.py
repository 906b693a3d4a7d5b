from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text
from .db import Base


class SessionSnapshot(Base):
	__tablename__ = "practice_session_snapshots"
	# One resumable session per learner and per unit (or mixed mode)
	storage_key = Column(String(256), primary_key=True, index=True)
	user_id = Column(String(128), nullable=False, index=True)
	session_id = Column(String(128), nullable=False)
	payload_json = Column(Text, nullable=False)  # full Session snapshot
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
