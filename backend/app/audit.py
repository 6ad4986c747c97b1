from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from app.models import AuditLog


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    actor: str
    action: str
    entity_type: str
    entity_id: str
    payload: dict = field(default_factory=dict)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class DatabaseAuditSink:
    """Writes each event to ``audit_log`` in its own session.

    Emission happens after the business transaction has committed and never
    raises: a failing sink is logged and the caller carries on.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def emit(self, event: AuditEvent) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    AuditLog(
                        actor=event.actor,
                        action=event.action,
                        entity_type=event.entity_type,
                        entity_id=event.entity_id,
                        payload=json.dumps(event.payload, sort_keys=True, default=str),
                    )
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception("Audit sink dropped %s for %s %s", event.action, event.entity_type, event.entity_id)
