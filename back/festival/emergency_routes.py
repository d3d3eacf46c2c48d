from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from .db import get_session
from .models import EmergencyResolve, EmergencyStart, emergency_to_dict
from .services import Services, get_services

router = APIRouter()


@router.post("/stop", status_code=status.HTTP_201_CREATED)
def emergency_stop(
    request: EmergencyStart,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> dict:
    """Suspend order intake and alert every screen."""
    return emergency_to_dict(services.emergency.start(session, request))


@router.post("/{emergency_id}/resolve")
def resolve_emergency(
    emergency_id: int,
    request: EmergencyResolve,
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> dict:
    return emergency_to_dict(services.emergency.resolve(session, emergency_id, request))


@router.get("/active")
def active_emergencies(
    session: Session = Depends(get_session),
    services: Services = Depends(get_services),
) -> list[dict]:
    return [emergency_to_dict(e) for e in services.emergency.active(session)]
