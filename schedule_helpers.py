"""
Schedule Helper Functions
Read-only projection of active student transport assignments into per-route
pickup and dropoff lists for one calendar day
"""

from datetime import date, time
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from transport_models import StudentTransport, TransportRoute, RouteWaypoint, TransportStatusEnum
from transport_validators import TransportValidator as V

logger = logging.getLogger(__name__)

# Assignments without a time sort after those with one
LATEST_TIME = time.max


def _stop_sequences(session: Session, route_ids) -> dict:
    """{(route_id, stop_id): first waypoint sequence} for registry stops on the given routes"""
    if not route_ids:
        return {}
    rows = session.query(RouteWaypoint.route_id, RouteWaypoint.stop_id, RouteWaypoint.sequence).filter(
        RouteWaypoint.route_id.in_(route_ids),
        RouteWaypoint.stop_id.isnot(None)
    ).all()

    sequences = {}
    for route_id, stop_id, sequence in rows:
        key = (route_id, stop_id)
        if key not in sequences or sequence < sequences[key]:
            sequences[key] = sequence
    return sequences


def _entry(binding: StudentTransport, stop, planned_time) -> dict:
    return {
        'transport_id': binding.id,
        'student_id': binding.student_id,
        'stop_id': stop.id if stop else None,
        'stop_name': stop.stop_name if stop else None,
        'latitude': stop.latitude if stop else None,
        'longitude': stop.longitude if stop else None,
        'time': planned_time.strftime('%H:%M') if planned_time else None,
        'transport_type': binding.transport_type.value,
        'special_requirements': binding.special_requirements,
        'needs_reassignment': binding.needs_reassignment,
    }


def get_schedule(session: Session, tenant_id: int, on_date=None, route_id: int = None) -> list:
    """
    Pickup and dropoff lists for every route with riders on `on_date`.

    An assignment is on the schedule when it is active and on_date falls in
    [start_date, end_date], with an open end_date meaning ongoing. Routes are
    ordered by name; each list by assignment time, then the stop's position on
    the route, then assignment id.
    """
    on_date = V.date_value(on_date, 'date') or date.today()

    query = session.query(StudentTransport).options(
        joinedload(StudentTransport.route),
        joinedload(StudentTransport.pickup_stop),
        joinedload(StudentTransport.dropoff_stop),
    ).filter(
        StudentTransport.tenant_id == tenant_id,
        StudentTransport.status == TransportStatusEnum.ACTIVE,
        StudentTransport.start_date <= on_date,
        or_(StudentTransport.end_date.is_(None), StudentTransport.end_date >= on_date)
    )
    if route_id:
        query = query.filter(StudentTransport.route_id == route_id)

    bindings = query.all()
    sequences = _stop_sequences(session, {b.route_id for b in bindings})

    grouped = {}
    for binding in bindings:
        grouped.setdefault(binding.route_id, []).append(binding)

    def order_key(binding, stop_id, planned_time):
        return (
            planned_time or LATEST_TIME,
            sequences.get((binding.route_id, stop_id), float('inf')),
            binding.id,
        )

    schedule = []
    for bindings_on_route in grouped.values():
        route: TransportRoute = bindings_on_route[0].route

        pickups = sorted(bindings_on_route, key=lambda b: order_key(b, b.pickup_stop_id, b.pickup_time))
        dropoffs = sorted(bindings_on_route, key=lambda b: order_key(b, b.dropoff_stop_id, b.dropoff_time))

        schedule.append({
            'route_id': route.id,
            'route_code': route.route_code,
            'route_name': route.route_name,
            'route_status': route.status.value,
            'vehicle_id': route.assigned_vehicle_id,
            'driver_id': route.assigned_driver_id,
            'pickup_time': route.pickup_time.strftime('%H:%M') if route.pickup_time else None,
            'dropoff_time': route.dropoff_time.strftime('%H:%M') if route.dropoff_time else None,
            'pickups': [_entry(b, b.pickup_stop, b.pickup_time) for b in pickups],
            'dropoffs': [_entry(b, b.dropoff_stop, b.dropoff_time) for b in dropoffs],
        })

    schedule.sort(key=lambda r: ((r['route_name'] or '').lower(), r['route_id']))
    logger.info(f"Built schedule for tenant {tenant_id} on {on_date.isoformat()}: "
                f"{len(schedule)} routes, {len(bindings)} students")
    return schedule


def get_daily_report(session: Session, tenant_id: int, on_date=None, route_id: int = None) -> dict:
    """Headline counts for a day's schedule plus routes running without a vehicle or driver"""
    on_date = V.date_value(on_date, 'date') or date.today()
    schedule = get_schedule(session, tenant_id, on_date, route_id)

    return {
        'date': on_date.isoformat(),
        'total_routes': len(schedule),
        'total_pickups': sum(len(r['pickups']) for r in schedule),
        'total_dropoffs': sum(len(r['dropoffs']) for r in schedule),
        'special_requirements': sum(1 for r in schedule for p in r['pickups'] if p['special_requirements']),
        'routes_missing_vehicle': [r['route_id'] for r in schedule if not r['vehicle_id']],
        'routes_missing_driver': [r['route_id'] for r in schedule if not r['driver_id']],
        'routes': schedule,
    }
