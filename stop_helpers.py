"""
Stop Registry Helper Functions
Create, query and retire the geographic stops routes and students reference
"""

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from transport_models import (
    TransportStop, TransportRoute, RouteWaypoint, StudentTransport,
    StopTypeEnum, StopStatusEnum, RouteStatusEnum, TransportStatusEnum
)
from transport_errors import TransportError, StopNotFound, StopInUse, DuplicateCode
from transport_validators import TransportValidator as V
from geo_helpers import validate_coordinate

logger = logging.getLogger(__name__)

STOP_TEXT_FIELDS = ('stop_name', 'address', 'landmark', 'notes')


def _apply_stop_fields(stop: TransportStop, data: dict):
    for field in STOP_TEXT_FIELDS:
        if field in data:
            setattr(stop, field, V.text(data[field], field))

    if 'stop_code' in data:
        stop.stop_code = V.text(data['stop_code'], 'stop_code', max_length=20)

    if 'latitude' in data or 'longitude' in data:
        lat = data.get('latitude', stop.latitude)
        lon = data.get('longitude', stop.longitude)
        point = validate_coordinate(lat, lon)
        stop.latitude, stop.longitude = point.latitude, point.longitude

    if 'stop_type' in data:
        stop.stop_type = V.enum_value(StopTypeEnum, data['stop_type'], 'stop_type', default=StopTypeEnum.PICKUP)
    if 'status' in data:
        stop.status = V.enum_value(StopStatusEnum, data['status'], 'status', default=StopStatusEnum.ACTIVE)
    if 'capacity_estimate' in data:
        stop.capacity_estimate = V.int_value(data['capacity_estimate'], 'capacity_estimate', default=0, minimum=0)
    if 'safety_rating' in data:
        stop.safety_rating = V.float_value(data['safety_rating'], 'safety_rating', minimum=0, maximum=5)


def _check_stop_code(session: Session, tenant_id: int, stop_code, exclude_id=None):
    if not stop_code:
        return
    query = session.query(TransportStop).filter_by(tenant_id=tenant_id, stop_code=stop_code)
    if exclude_id:
        query = query.filter(TransportStop.id != exclude_id)
    if query.first():
        raise DuplicateCode('stop_code', stop_code)


def _commit_stop(session: Session, stop: TransportStop):
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateCode('stop_code', stop.stop_code)
    session.refresh(stop)
    return stop


# ===== STOP MANAGEMENT =====

def create_stop(session: Session, tenant_id: int, data: dict, actor_id: int = None) -> TransportStop:
    """Add a stop to the registry after validating name and coordinates"""
    V.require(data, 'stop_name', 'latitude', 'longitude')

    stop = TransportStop(tenant_id=tenant_id, created_by=actor_id, updated_by=actor_id,
                         stop_type=StopTypeEnum.PICKUP, status=StopStatusEnum.ACTIVE)
    _apply_stop_fields(stop, data)
    _check_stop_code(session, tenant_id, stop.stop_code)

    session.add(stop)
    _commit_stop(session, stop)

    logger.info(f"Created stop {stop.id} '{stop.stop_name}' for tenant {tenant_id}")
    return stop


def get_stop(session: Session, tenant_id: int, stop_id: int, field: str = 'stop_id') -> TransportStop:
    """Fetch a stop inside the tenant scope or raise StopNotFound"""
    stop = session.query(TransportStop).filter_by(id=stop_id, tenant_id=tenant_id).first()
    if not stop:
        raise StopNotFound(stop_id, field=field)
    return stop


def list_stops(session: Session, tenant_id: int, status=None, stop_type=None, search: str = None) -> list:
    """Stops for a tenant, newest first"""
    query = session.query(TransportStop).filter_by(tenant_id=tenant_id)

    if status:
        query = query.filter(TransportStop.status == V.enum_value(StopStatusEnum, status, 'status'))
    if stop_type:
        query = query.filter(TransportStop.stop_type == V.enum_value(StopTypeEnum, stop_type, 'type'))
    if search:
        search_pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                TransportStop.stop_name.ilike(search_pattern),
                TransportStop.stop_code.ilike(search_pattern),
                TransportStop.address.ilike(search_pattern)
            )
        )

    return query.order_by(TransportStop.created_at.desc(), TransportStop.id.desc()).all()


def update_stop(session: Session, tenant_id: int, stop_id: int, data: dict, actor_id: int = None) -> TransportStop:
    """Merge changed fields into a stop, re-validating coordinates and code"""
    stop = get_stop(session, tenant_id, stop_id)

    try:
        if 'stop_name' in data:
            V.require(data, 'stop_name')
        _apply_stop_fields(stop, data)
        _check_stop_code(session, tenant_id, stop.stop_code, exclude_id=stop.id)
    except TransportError:
        session.rollback()
        raise
    stop.updated_by = actor_id

    _commit_stop(session, stop)
    logger.info(f"Updated stop {stop.id} for tenant {tenant_id}")
    return stop


def set_stop_status(session: Session, tenant_id: int, stop_id: int, status, actor_id: int = None) -> TransportStop:
    """Move a stop between active/inactive/closed states"""
    stop = get_stop(session, tenant_id, stop_id)
    old_status = stop.status
    stop.status = V.enum_value(StopStatusEnum, status, 'status')
    stop.updated_by = actor_id
    session.commit()

    logger.info(f"Stop {stop.id} status {old_status.value} -> {stop.status.value} (tenant {tenant_id})")
    return stop


def retire_stop(session: Session, tenant_id: int, stop_id: int, actor_id: int = None) -> TransportStop:
    """Soft-retire a stop; the row stays for routes and bindings that reference it"""
    return set_stop_status(session, tenant_id, stop_id, StopStatusEnum.PERMANENTLY_CLOSED, actor_id)


def stop_references(session: Session, tenant_id: int, stop_id: int) -> dict:
    """Count active routes and active bindings that still point at a stop"""
    active_routes = session.query(RouteWaypoint.route_id).join(TransportRoute).filter(
        RouteWaypoint.stop_id == stop_id,
        TransportRoute.tenant_id == tenant_id,
        TransportRoute.status == RouteStatusEnum.ACTIVE
    ).distinct().count()

    active_bindings = session.query(StudentTransport).filter(
        StudentTransport.tenant_id == tenant_id,
        StudentTransport.status == TransportStatusEnum.ACTIVE,
        or_(StudentTransport.pickup_stop_id == stop_id, StudentTransport.dropoff_stop_id == stop_id)
    ).count()

    return {'active_routes': active_routes, 'active_bindings': active_bindings}


def delete_stop(session: Session, tenant_id: int, stop_id: int) -> bool:
    """Physically delete a stop nothing references any more"""
    stop = get_stop(session, tenant_id, stop_id)

    refs = stop_references(session, tenant_id, stop_id)
    any_refs = session.query(RouteWaypoint).filter_by(stop_id=stop_id).count() + \
        session.query(StudentTransport).filter(
            StudentTransport.tenant_id == tenant_id,
            or_(StudentTransport.pickup_stop_id == stop_id, StudentTransport.dropoff_stop_id == stop_id)
        ).count()

    if refs['active_routes'] or refs['active_bindings']:
        logger.warning(f"Refused to delete stop {stop_id}: {refs}")
        raise StopInUse("Stop is referenced by an active route or student assignment; retire it instead",
                        stop_id=stop_id, **refs)
    if any_refs:
        # Historical references keep the row for audit
        logger.warning(f"Refused to delete stop {stop_id}: referenced by inactive routes or past assignments")
        raise StopInUse("Stop is referenced by past routes or assignments; retire it instead",
                        stop_id=stop_id, **refs)

    session.delete(stop)
    session.commit()
    logger.info(f"Deleted stop {stop_id} for tenant {tenant_id}")
    return True
