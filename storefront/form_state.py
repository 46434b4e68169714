"""Session-scoped key-value store for UI state that must survive a reload.

State is keyed by (session id, namespace). Marking a namespace submitted drops
its state; the next ``get`` then clears the flag and returns ``None``.
"""
import json

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models

log = structlog.get_logger()


class FormStateStore:
    def __init__(self, db: Session):
        self.db = db

    def _row(self, session_id: str, namespace: str) -> models.FormState | None:
        return self.db.execute(
            select(models.FormState).where(models.FormState.session_id == session_id, models.FormState.namespace == namespace)
        ).scalar_one_or_none()

    def _upsert(self, session_id: str, namespace: str) -> models.FormState:
        row = self._row(session_id, namespace)
        if row is None:
            row = models.FormState(session_id=session_id, namespace=namespace)
            self.db.add(row)
        return row

    def get(self, session_id: str, namespace: str):
        row = self._row(session_id, namespace)
        if row is None:
            return None
        if row.submitted:
            self.db.delete(row); self.db.commit()
            return None
        if not row.payload:
            return None
        try:
            return json.loads(row.payload)
        except ValueError:
            log.warning("form_state_corrupt", session_id=session_id, namespace=namespace)
            self.db.delete(row); self.db.commit()
            return None

    def save(self, session_id: str, namespace: str, state) -> None:
        row = self._upsert(session_id, namespace)
        row.payload = json.dumps(state)
        row.submitted = False
        self.db.commit()

    def mark_submitted(self, session_id: str, namespace: str) -> None:
        row = self._upsert(session_id, namespace)
        row.payload = None
        row.submitted = True
        self.db.commit()

    def clear(self, session_id: str, namespace: str) -> None:
        row = self._row(session_id, namespace)
        if row is not None:
            self.db.delete(row); self.db.commit()
