"""
Emergency Control: stop and resume order intake.

While an `emergency_stop` entry is active, OrderIntake rejects new orders.
"""
import logging

from sqlmodel import Session, col, select

from .broadcaster import NotificationBroadcaster
from .db import rollback_on_error
from .errors import InvalidTransition, NotFound, ValidationError
from .event_catalog import DomainEvent
from .models import EmergencyLog, EmergencyResolve, EmergencyStart, EmergencyStatus, emergency_to_dict, utcnow

logger = logging.getLogger(__name__)


class EmergencyControl:
    def __init__(self, broadcaster: NotificationBroadcaster):
        self.broadcaster = broadcaster

    def start(self, session: Session, request: EmergencyStart) -> EmergencyLog:
        if not request.description.strip() or not request.initiated_by.strip():
            raise ValidationError("description and initiated_by are required")

        entry = EmergencyLog(
            event_type=request.event_type,
            severity=request.severity,
            description=request.description.strip(),
            initiated_by=request.initiated_by.strip(),
        )
        with rollback_on_error(session, "Emergency stop"):
            session.add(entry)
            session.commit()
        session.refresh(entry)

        logger.warning(
            f"Emergency {entry.event_type} started by {entry.initiated_by}: {entry.description}"
        )
        self.broadcaster.publish(DomainEvent.emergency_started, {
            "emergency": emergency_to_dict(entry),
            "orders_suspended": entry.event_type == "emergency_stop",
        })
        return entry

    def resolve(self, session: Session, emergency_id: int, request: EmergencyResolve) -> EmergencyLog:
        if not request.resolved_by.strip():
            raise ValidationError("resolved_by is required")

        with rollback_on_error(session, "Emergency resolve"):
            entry = session.get(EmergencyLog, emergency_id, with_for_update=True)
            if entry is None:
                raise NotFound(f"Emergency {emergency_id} not found")
            if entry.status == EmergencyStatus.resolved:
                raise InvalidTransition(f"Emergency {emergency_id} is already resolved")

            entry.status = EmergencyStatus.resolved
            entry.resolved_by = request.resolved_by.strip()
            entry.resolution = request.resolution
            entry.resolved_at = utcnow()
            session.add(entry)
            session.commit()
        session.refresh(entry)

        logger.info(f"Emergency {entry.id} resolved by {entry.resolved_by}")
        self.broadcaster.publish(DomainEvent.emergency_resolved, {
            "emergency": emergency_to_dict(entry),
        })
        return entry

    def active(self, session: Session) -> list[EmergencyLog]:
        return list(session.exec(
            select(EmergencyLog)
            .where(EmergencyLog.status == EmergencyStatus.active)
            .order_by(col(EmergencyLog.created_at).desc())
        ).all())
