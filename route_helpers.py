"""
Route Builder Helper Functions
Creates routes manually or from an ordered list of stops, and keeps their
geometry, capacity and fee schedule consistent
"""

from datetime import date
import math
import re
import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from transport_models import (
    TransportRoute, RouteWaypoint, StudentTransport,
    RouteTypeEnum, RouteStatusEnum, TransportStatusEnum
)
from transport_errors import (
    RouteNotFound, DuplicateRouteCode, RouteInUse, InsufficientStops,
    ConstraintViolation, MissingField, InvalidValue, InvalidSpeed, TransportError
)
from transport_validators import TransportValidator as V
from geo_helpers import validate_coordinate, route_distance, estimate_duration
from stop_helpers import get_stop

logger = logging.getLogger(__name__)

ROUTE_TEXT_FIELDS = ('route_name', 'description', 'start_location', 'end_location', 'notes')
ROUTE_FEE_FIELDS = ('base_fee', 'distance_fee', 'special_needs_fee', 'emergency_fee')


# ===== ROUTE CODE GENERATION =====

def generate_route_code(session: Session, tenant_id: int, prefix: str = 'OPT') -> str:
    """
    Generate unique route code in format: OPT-YYYYMMDD-NNN
    Example: OPT-20250115-001
    """
    day_prefix = f"{prefix}-{date.today().strftime('%Y%m%d')}"

    last_route = session.query(TransportRoute).filter(
        TransportRoute.tenant_id == tenant_id,
        TransportRoute.route_code.like(f"{day_prefix}-%")
    ).order_by(TransportRoute.route_code.desc()).first()

    sequence = 1
    if last_route:
        match = re.search(r'-(\d+)$', last_route.route_code)
        if match:
            sequence = int(match.group(1)) + 1

    return f"{day_prefix}-{sequence:03d}"


# ===== WAYPOINTS =====

def _build_waypoints(session: Session, tenant_id: int, waypoints_data: list, label: str = 'waypoints') -> list:
    """Turn raw waypoint dicts into RouteWaypoint rows, resolving registry stops"""
    if waypoints_data is None:
        return []
    if not isinstance(waypoints_data, (list, tuple)):
        raise InvalidValue("must be a list", field=label)

    waypoints = []
    for index, item in enumerate(waypoints_data):
        if not isinstance(item, dict):
            raise InvalidValue("must be an object with stop_id or latitude/longitude",
                               field=f'{label}[{index}]', value=item)
        stop_id = item.get('stop_id')
        latitude = item.get('latitude')
        longitude = item.get('longitude')
        address = item.get('address')
        students = item.get('estimated_students')

        if stop_id:
            stop = get_stop(session, tenant_id, stop_id, field=f'{label}[{index}].stop_id')
            latitude = stop.latitude if latitude is None else latitude
            longitude = stop.longitude if longitude is None else longitude
            address = address or stop.address or stop.stop_name
            students = stop.capacity_estimate if students is None else students

        if latitude is None or longitude is None:
            raise MissingField(f'{label}[{index}]', "needs a stop_id or latitude and longitude")

        point = validate_coordinate(latitude, longitude, f'{label}[{index}].')
        waypoints.append(RouteWaypoint(
            tenant_id=tenant_id,
            stop_id=stop_id,
            sequence=index + 1,
            latitude=point.latitude,
            longitude=point.longitude,
            address=V.text(address, 'address'),
            estimated_students=V.int_value(students, f'{label}[{index}].estimated_students', default=0, minimum=0),
            arrival_offset_minutes=V.int_value(item.get('arrival_offset_minutes'),
                                               f'{label}[{index}].arrival_offset_minutes', default=0, minimum=0),
        ))
    return waypoints


def _assumed_speed(values: dict) -> float:
    speed = V.float_value(values.get('assumed_speed_kmh'), 'assumed_speed_kmh',
                          default=Config.TRANSPORT_ASSUMED_SPEED_KMH)
    if speed <= 0:
        raise InvalidSpeed("must be greater than 0", field='assumed_speed_kmh', value=speed)
    return speed


def _waypoint_geometry(waypoints: list, assumed_speed_kmh: float) -> tuple:
    """(distance_km, duration_minutes) along waypoints in sequence"""
    distance_km = round(route_distance((w.latitude, w.longitude) for w in waypoints), 2)
    return distance_km, estimate_duration(distance_km, assumed_speed_kmh)


# ===== FIELD MERGING =====

def _apply_route_fields(route: TransportRoute, data: dict):
    for field in ROUTE_TEXT_FIELDS:
        if field in data:
            setattr(route, field, V.text(data[field], field))

    if 'route_code' in data:
        route.route_code = V.text(data['route_code'], 'route_code', max_length=30)
    if 'route_type' in data:
        route.route_type = V.enum_value(RouteTypeEnum, data['route_type'], 'route_type',
                                        default=RouteTypeEnum.ROUND_TRIP)
    if 'distance_km' in data:
        route.distance_km = V.float_value(data['distance_km'], 'distance_km', default=0.0, minimum=0)
    if 'estimated_duration_minutes' in data:
        route.estimated_duration_minutes = V.int_value(data['estimated_duration_minutes'],
                                                       'estimated_duration_minutes', default=0, minimum=0)
    if 'capacity' in data:
        route.capacity = V.int_value(data['capacity'], 'capacity', minimum=1)
    if 'pickup_time' in data:
        route.pickup_time = V.time_value(data['pickup_time'], 'pickup_time')
    if 'dropoff_time' in data:
        route.dropoff_time = V.time_value(data['dropoff_time'], 'dropoff_time')

    if data.get('fees') is not None and not isinstance(data['fees'], dict):
        raise InvalidValue("must be an object of fee amounts", field='fees')
    fees = dict(data.get('fees') or {})
    fees.update({k: data[k] for k in ROUTE_FEE_FIELDS + ('medical_fee',) if k in data})
    for field in ROUTE_FEE_FIELDS:
        if field in fees:
            setattr(route, field, V.decimal_value(fees[field], field, default=0))
    if 'medical_fee' in fees:
        route.medical_fee = V.decimal_value(fees['medical_fee'], 'medical_fee')


def _check_route_code(session: Session, tenant_id: int, route_code, exclude_id=None):
    if not route_code:
        return
    query = session.query(TransportRoute).filter_by(tenant_id=tenant_id, route_code=route_code)
    if exclude_id:
        query = query.filter(TransportRoute.id != exclude_id)
    if query.first():
        logger.warning(f"Duplicate route code '{route_code}' for tenant {tenant_id}")
        raise DuplicateRouteCode(route_code)


def _commit_route(session: Session, route: TransportRoute):
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Route write rejected by the database: {e.orig}")
        raise DuplicateRouteCode(route.route_code)
    session.refresh(route)
    return route


# ===== ROUTE MANAGEMENT =====

def create_route(session: Session, tenant_id: int, data: dict, actor_id: int = None) -> TransportRoute:
    """
    Create a route in the active state

    Args:
        data: route fields; optional 'waypoints' list of
              {stop_id | latitude/longitude, address, estimated_students, arrival_offset_minutes}
    Raises:
        MissingField, DuplicateRouteCode, InvalidCoordinate
    """
    V.require(data, 'route_name', 'start_location', 'end_location')

    route = TransportRoute(
        tenant_id=tenant_id,
        route_type=RouteTypeEnum.ROUND_TRIP,
        status=RouteStatusEnum.ACTIVE,
        capacity=Config.ROUTE_MIN_CAPACITY,
        current_occupancy=0,
        created_by=actor_id,
        updated_by=actor_id,
    )
    _apply_route_fields(route, data)
    route.status = RouteStatusEnum.ACTIVE
    speed = _assumed_speed(data)
    _check_route_code(session, tenant_id, route.route_code)

    waypoints = _build_waypoints(session, tenant_id, data.get('waypoints'))
    if waypoints:
        route.waypoints = waypoints
        distance_km, duration = _waypoint_geometry(waypoints, speed)
        if 'distance_km' not in data:
            route.distance_km = distance_km
        if 'estimated_duration_minutes' not in data:
            route.estimated_duration_minutes = duration

    session.add(route)
    _commit_route(session, route)

    logger.info(f"Created route {route.id} '{route.route_name}' ({route.route_code}) for tenant {tenant_id}")
    return route


def get_route(session: Session, tenant_id: int, route_id: int) -> TransportRoute:
    """Fetch a route inside the tenant scope or raise RouteNotFound"""
    route = session.query(TransportRoute).filter_by(id=route_id, tenant_id=tenant_id).first()
    if not route:
        raise RouteNotFound(route_id)
    return route


def list_routes(session: Session, tenant_id: int, status=None, route_type=None,
                vehicle_id: int = None, driver_id: int = None, search: str = None) -> list:
    """Routes for a tenant, newest first"""
    query = session.query(TransportRoute).filter_by(tenant_id=tenant_id)

    if status:
        query = query.filter(TransportRoute.status == V.enum_value(RouteStatusEnum, status, 'status'))
    if route_type:
        query = query.filter(TransportRoute.route_type == V.enum_value(RouteTypeEnum, route_type, 'type'))
    if vehicle_id:
        query = query.filter(TransportRoute.assigned_vehicle_id == vehicle_id)
    if driver_id:
        query = query.filter(TransportRoute.assigned_driver_id == driver_id)
    if search:
        search_pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                TransportRoute.route_name.ilike(search_pattern),
                TransportRoute.route_code.ilike(search_pattern),
                TransportRoute.description.ilike(search_pattern)
            )
        )

    return query.order_by(TransportRoute.created_at.desc(), TransportRoute.id.desc()).all()


def update_route(session: Session, tenant_id: int, route_id: int, data: dict, actor_id: int = None) -> TransportRoute:
    """
    Merge fields into a route. Resource bindings and occupancy are owned by
    the assignment helpers and are ignored here.
    """
    route = get_route(session, tenant_id, route_id)

    try:
        for field in ('route_name', 'start_location', 'end_location'):
            if field in data:
                V.require(data, field)

        _apply_route_fields(route, data)
        if 'status' in data:
            route.status = V.enum_value(RouteStatusEnum, data['status'], 'status', default=route.status)
        speed = _assumed_speed(data)

        if route.capacity < route.current_occupancy:
            raise ConstraintViolation(f"cannot be lower than current occupancy ({route.current_occupancy})",
                                      field='capacity', route_id=route_id)

        _check_route_code(session, tenant_id, route.route_code, exclude_id=route.id)

        if 'waypoints' in data:
            waypoints = _build_waypoints(session, tenant_id, data.get('waypoints'))
            route.waypoints = []
            session.flush()
            route.waypoints = waypoints
            if waypoints and 'distance_km' not in data:
                route.distance_km, route.estimated_duration_minutes = _waypoint_geometry(waypoints, speed)
    except TransportError:
        session.rollback()
        raise

    route.updated_by = actor_id
    _commit_route(session, route)

    logger.info(f"Updated route {route.id} for tenant {tenant_id}")
    return route


def set_route_status(session: Session, tenant_id: int, route_id: int, status, actor_id: int = None) -> TransportRoute:
    """Activate or retire a route (inactive/suspended/maintenance)"""
    route = get_route(session, tenant_id, route_id)
    old_status = route.status
    route.status = V.enum_value(RouteStatusEnum, status, 'status')
    route.updated_by = actor_id
    session.commit()

    logger.info(f"Route {route.id} status {old_status.value} -> {route.status.value} (tenant {tenant_id})")
    return route


def delete_route(session: Session, tenant_id: int, route_id: int) -> bool:
    """Delete a route with no bound resources and no student assignment history"""
    route = get_route(session, tenant_id, route_id)

    if route.assigned_vehicle_id or route.assigned_driver_id:
        logger.warning(f"Refused to delete route {route_id}: resources still bound")
        raise RouteInUse("Cannot delete route with an assigned vehicle or driver",
                         route_id=route_id, vehicle_id=route.assigned_vehicle_id,
                         driver_id=route.assigned_driver_id)

    bindings = session.query(StudentTransport).filter_by(tenant_id=tenant_id, route_id=route_id)
    active_count = bindings.filter(StudentTransport.status == TransportStatusEnum.ACTIVE).count()
    if active_count:
        raise RouteInUse("Cannot delete route with active student assignments",
                         route_id=route_id, active_bindings=active_count)
    if bindings.count():
        # Assignments are never deleted, so their route row stays for the audit trail
        raise RouteInUse("Route has past student assignments; set it inactive instead",
                         route_id=route_id, status=route.status.value)

    session.delete(route)
    session.commit()
    logger.info(f"Deleted route {route_id} for tenant {tenant_id}")
    return True


# ===== ROUTE OPTIMIZATION =====

def optimize_route(session: Session, tenant_id: int, stops: list, constraints: dict = None,
                   actor_id: int = None) -> TransportRoute:
    """
    Build a route from stops visited in the order given.

    Distance is the haversine sum along the sequence; duration follows from the
    assumed speed; capacity covers every expected student plus a buffer; each
    stop gets an arrival offset proportional to its position.

    Args:
        stops: list of {stop_id | latitude/longitude, address, estimated_students}
        constraints: optional max_distance_km, max_duration_minutes, max_capacity,
                     assumed_speed_kmh, route_name, route_type, pickup_time, dropoff_time, fees
    """
    if constraints is None:
        constraints = {}
    if not isinstance(constraints, dict):
        raise InvalidValue("must be an object", field='constraints')
    if stops is not None and not isinstance(stops, (list, tuple)):
        raise InvalidValue("must be a list", field='stops')
    stops = list(stops or [])
    if len(stops) < 2:
        raise InsufficientStops("At least 2 stops are required for route optimization",
                                field='stops', received=len(stops))

    waypoints = _build_waypoints(session, tenant_id, stops, label='stops')

    speed = _assumed_speed(constraints)
    distance_km, duration = _waypoint_geometry(waypoints, speed)
    total_students = sum(w.estimated_students or 0 for w in waypoints)
    capacity = max(total_students + Config.ROUTE_CAPACITY_BUFFER, Config.ROUTE_MIN_CAPACITY)

    max_distance = V.float_value(constraints.get('max_distance_km'), 'max_distance_km', minimum=0)
    if max_distance is not None and distance_km > max_distance:
        raise ConstraintViolation(f"route is {distance_km} km, limit is {max_distance} km",
                                  field='max_distance_km', distance_km=distance_km)

    max_duration = V.int_value(constraints.get('max_duration_minutes'), 'max_duration_minutes', minimum=0)
    if max_duration is not None and duration > max_duration:
        raise ConstraintViolation(f"route takes {duration} minutes, limit is {max_duration}",
                                  field='max_duration_minutes', estimated_duration_minutes=duration)

    max_capacity = V.int_value(constraints.get('max_capacity'), 'max_capacity', minimum=0)
    if max_capacity is not None and capacity > max_capacity:
        raise ConstraintViolation(f"route needs {capacity} seats, limit is {max_capacity}",
                                  field='max_capacity', required_capacity=capacity)

    stop_count = len(waypoints)
    waypoint_data = []
    for index, waypoint in enumerate(waypoints):
        waypoint_data.append({
            'stop_id': waypoint.stop_id,
            'latitude': waypoint.latitude,
            'longitude': waypoint.longitude,
            'address': waypoint.address,
            'estimated_students': waypoint.estimated_students,
            'arrival_offset_minutes': math.floor(index * duration / stop_count),
        })

    route_data = {
        'route_code': constraints.get('route_code') or generate_route_code(session, tenant_id),
        'route_name': constraints.get('route_name') or f"Optimized Route - {stop_count} stops",
        'route_type': constraints.get('route_type') or RouteTypeEnum.ROUND_TRIP,
        'start_location': waypoints[0].address or f"{waypoints[0].latitude},{waypoints[0].longitude}",
        'end_location': waypoints[-1].address or f"{waypoints[-1].latitude},{waypoints[-1].longitude}",
        'distance_km': distance_km,
        'estimated_duration_minutes': duration,
        'capacity': capacity,
        'waypoints': waypoint_data,
    }
    for key in ('pickup_time', 'dropoff_time', 'fees', 'description'):
        if key in constraints:
            route_data[key] = constraints[key]

    logger.info(f"Optimizing route for tenant {tenant_id}: {stop_count} stops, "
                f"{distance_km} km, {duration} min, capacity {capacity}")
    return create_route(session, tenant_id, route_data, actor_id=actor_id)
