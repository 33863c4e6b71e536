"""
Transport Activity & Analytics Helper Functions
Records realized trips against student transport assignments, keeps each
assignment's rolling metrics, and builds on-demand roll-ups for routes,
vehicles, drivers and the dashboard
"""

from collections import namedtuple, Counter
from datetime import date, datetime
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import Config
from transport_models import (
    TransportRoute, TransportVehicle, TransportDriver, StudentTransport, TripActivity, VehicleMaintenance,
    DriverTraining, TrainingStatusEnum,
    RouteStatusEnum, VehicleStatusEnum, DriverStatusEnum, TransportStatusEnum, TripStatusEnum
)
from transport_errors import (
    BindingNotActive, ConcurrentModification, InvalidValue, MissingField
)
from transport_validators import TransportValidator as V
from route_helpers import get_route
from vehicle_helpers import get_vehicle, vehicles_due_service
from driver_helpers import get_driver, drivers_with_expiring_licenses, drivers_due_medical_check
from student_transport_helpers import get_transport, append_trip_activity

logger = logging.getLogger(__name__)


# ===== ROLLING METRICS =====

TripMetrics = namedtuple('TripMetrics', [
    'total_trips', 'completed_trips', 'missed_trips', 'delayed_trips', 'cancelled_trips',
    'average_delay_minutes', 'on_time_rate'
])

EMPTY_METRICS = TripMetrics(0, 0, 0, 0, 0, 0.0, 0.0)

STATUS_COUNTERS = {
    TripStatusEnum.COMPLETED: 'completed_trips',
    TripStatusEnum.MISSED: 'missed_trips',
    TripStatusEnum.DELAYED: 'delayed_trips',
    TripStatusEnum.CANCELLED: 'cancelled_trips',
}


def fold_trip(metrics: TripMetrics, status: TripStatusEnum, delay_minutes=None) -> TripMetrics:
    """
    Add one trip to a metrics summary without re-reading history.

    avg_n = (avg_(n-1) * (n - 1) + delay) / n with n the count after this trip;
    a trip without a delay counts as 0 minutes. Only completed trips are
    on time, so on_time_rate = completed / total * 100.
    """
    total = metrics.total_trips + 1
    counter = STATUS_COUNTERS[status]
    delay = delay_minutes or 0

    updated = metrics._replace(**{counter: getattr(metrics, counter) + 1})
    average = (metrics.average_delay_minutes * (total - 1) + delay) / total
    on_time_rate = updated.completed_trips / total * 100 if total else 0.0

    return updated._replace(total_trips=total, average_delay_minutes=average, on_time_rate=on_time_rate)


def metrics_from_history(records) -> TripMetrics:
    """Re-derive the summary from a trip log; terminal cancellation entries are not trips"""
    metrics = EMPTY_METRICS
    for record in sorted(records, key=lambda r: r.sequence):
        if record.is_terminal:
            continue
        metrics = fold_trip(metrics, record.status, record.delay_minutes)
    return metrics


def metrics_of(binding: StudentTransport) -> TripMetrics:
    return TripMetrics(*(getattr(binding, field) or 0 for field in TripMetrics._fields))


def _minutes_late(planned, actual):
    if planned is None or actual is None:
        return None
    planned_at = datetime.combine(date.min, planned)
    actual_at = datetime.combine(date.min, actual)
    return max(int((actual_at - planned_at).total_seconds() // 60), 0)


def record_activity(session: Session, tenant_id: int, transport_id: int, status, planned_pickup=None,
                    actual_pickup=None, planned_dropoff=None, actual_dropoff=None, delay_minutes=None,
                    notes=None, trip_date=None, actor_id=None) -> StudentTransport:
    """
    Append a realized trip to an active assignment's log and fold it into the
    assignment's rolling metrics. When no delay is given it is taken from the
    planned and actual pickup times.
    """
    binding = get_transport(session, tenant_id, transport_id)
    if not binding.is_active:
        logger.warning(f"Refused trip record on transport {transport_id}: status {binding.status.value}")
        raise BindingNotActive(transport_id, binding.status.value)

    if status is None or status == '':
        raise MissingField('status')
    status = V.enum_value(TripStatusEnum, status, 'status')
    delay = V.int_value(delay_minutes, 'delay_minutes', minimum=0)

    planned_pickup = V.time_value(planned_pickup, 'planned_pickup') or binding.pickup_time
    actual_pickup = V.time_value(actual_pickup, 'actual_pickup')
    planned_dropoff = V.time_value(planned_dropoff, 'planned_dropoff') or binding.dropoff_time
    actual_dropoff = V.time_value(actual_dropoff, 'actual_dropoff')
    if delay is None:
        delay = _minutes_late(planned_pickup, actual_pickup)

    activity = append_trip_activity(
        session, binding, status, actor_id=actor_id,
        trip_date=V.date_value(trip_date, 'trip_date') or date.today(),
        planned_pickup_time=planned_pickup,
        actual_pickup_time=actual_pickup,
        planned_dropoff_time=planned_dropoff,
        actual_dropoff_time=actual_dropoff,
        delay_minutes=delay,
        notes=V.text(notes, 'notes'),
        is_terminal=False,
    )

    metrics = fold_trip(metrics_of(binding), status, delay)
    for field, value in metrics._asdict().items():
        setattr(binding, field, value)
    binding.updated_by = actor_id

    try:
        session.commit()
    except (StaleDataError, IntegrityError):
        session.rollback()
        logger.warning(f"Concurrent trip record on transport {transport_id}; rejected")
        raise ConcurrentModification("Another trip was recorded for this assignment at the same time; retry",
                                     transport_id=transport_id)

    logger.info(f"Recorded {status.value} trip #{activity.sequence} on transport {transport_id} "
                f"(delay {delay or 0} min, on-time {metrics.on_time_rate:.1f}%)")
    return binding


# ===== ROLL-UP HELPERS =====

def _percent(part, whole) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _count_by(session: Session, column, *filters) -> dict:
    rows = session.query(column, func.count()).filter(*filters).group_by(column).all()
    return {(key.value if hasattr(key, 'value') else key): count for key, count in rows}


def _trip_stats(session: Session, tenant_id: int, *filters) -> dict:
    """Counts and delay over recorded trips; terminal cancellation entries excluded"""
    rows = session.query(
        TripActivity.status,
        func.count(TripActivity.id),
        func.sum(func.coalesce(TripActivity.delay_minutes, 0))
    ).filter(
        TripActivity.tenant_id == tenant_id,
        TripActivity.is_terminal == False,  # noqa: E712
        *filters
    ).group_by(TripActivity.status).all()

    by_status = {status: (count, delay or 0) for status, count, delay in rows}
    total = sum(count for count, _ in by_status.values())
    total_delay = sum(delay for _, delay in by_status.values())
    completed = by_status.get(TripStatusEnum.COMPLETED, (0, 0))[0]

    return {
        'total_trips': total,
        'completed_trips': completed,
        'missed_trips': by_status.get(TripStatusEnum.MISSED, (0, 0))[0],
        'delayed_trips': by_status.get(TripStatusEnum.DELAYED, (0, 0))[0],
        'cancelled_trips': by_status.get(TripStatusEnum.CANCELLED, (0, 0))[0],
        'average_delay_minutes': round(total_delay / total, 2) if total else 0.0,
        'on_time_rate': _percent(completed, total),
    }


def _days_until(day, today):
    return (day - today).days if day else None


# ===== ROUTES =====

def get_route_analytics(session: Session, tenant_id: int) -> dict:
    """Route counts, seat utilization and routes missing a vehicle or driver"""
    routes = session.query(TransportRoute).filter_by(tenant_id=tenant_id).all()
    active = [r for r in routes if r.status == RouteStatusEnum.ACTIVE]

    capacity = sum(r.capacity or 0 for r in active)
    occupancy = sum(r.current_occupancy or 0 for r in active)

    return {
        'total_routes': len(routes),
        'by_status': dict(Counter(r.status.value for r in routes)),
        'by_type': dict(Counter(r.route_type.value for r in routes)),
        'total_capacity': capacity,
        'total_occupancy': occupancy,
        'utilization_rate': _percent(occupancy, capacity),
        'full_routes': [r.id for r in active if r.current_occupancy >= r.capacity],
        'routes_without_vehicle': [r.id for r in active if not r.assigned_vehicle_id],
        'routes_without_driver': [r.id for r in active if not r.assigned_driver_id],
        'average_distance_km': round(sum(r.distance_km or 0 for r in routes) / len(routes), 2) if routes else 0.0,
        'trip_performance': _trip_stats(session, tenant_id),
    }


def get_single_route_analytics(session: Session, tenant_id: int, route_id: int) -> dict:
    route = get_route(session, tenant_id, route_id)

    active_bindings = session.query(StudentTransport).filter_by(
        tenant_id=tenant_id, route_id=route.id, status=TransportStatusEnum.ACTIVE
    ).all()

    return {
        'route': route.to_dict(include_waypoints=False),
        'total_stops': route.total_stops,
        'occupancy': route.current_occupancy,
        'capacity': route.capacity,
        'available_seats': route.available_seats,
        'utilization_rate': _percent(route.current_occupancy, route.capacity),
        'active_students': len(active_bindings),
        'by_transport_type': dict(Counter(b.transport_type.value for b in active_bindings)),
        'needs_reassignment': sum(1 for b in active_bindings if b.needs_reassignment),
        'expected_revenue': str(sum((b.final_fee or 0) for b in active_bindings)),
        'trip_performance': _trip_stats(session, tenant_id, TripActivity.route_id == route.id),
    }


# ===== VEHICLES =====

def get_fleet_analytics(session: Session, tenant_id: int, days: int = None) -> dict:
    """Vehicle counts by status and type, maintenance rate and service/insurance due"""
    days = Config.EXPIRY_WARNING_DAYS if days is None else days
    total = session.query(TransportVehicle).filter_by(tenant_id=tenant_id).count()
    by_status = _count_by(session, TransportVehicle.status, TransportVehicle.tenant_id == tenant_id)
    in_maintenance = by_status.get(VehicleStatusEnum.MAINTENANCE.value, 0)
    assigned = session.query(TransportVehicle).filter(
        TransportVehicle.tenant_id == tenant_id,
        TransportVehicle.assigned_route_id.isnot(None)
    ).count()
    seats = session.query(func.coalesce(func.sum(TransportVehicle.capacity), 0)).filter(
        TransportVehicle.tenant_id == tenant_id,
        TransportVehicle.status == VehicleStatusEnum.ACTIVE
    ).scalar()

    return {
        'total_vehicles': total,
        'by_status': by_status,
        'by_type': _count_by(session, TransportVehicle.vehicle_type, TransportVehicle.tenant_id == tenant_id),
        'assigned_vehicles': assigned,
        'unassigned_vehicles': total - assigned,
        'active_seat_capacity': int(seats or 0),
        'maintenance_rate': _percent(in_maintenance, total),
        'due_service': [v.id for v in vehicles_due_service(session, tenant_id, days)],
    }


def get_vehicle_analytics(session: Session, tenant_id: int, vehicle_id: int) -> dict:
    vehicle = get_vehicle(session, tenant_id, vehicle_id)
    today = date.today()

    records = session.query(VehicleMaintenance).filter_by(
        tenant_id=tenant_id, vehicle_id=vehicle.id
    ).order_by(VehicleMaintenance.scheduled_date).all()
    upcoming = [r for r in records if r.scheduled_date >= today]

    return {
        'vehicle': vehicle.to_dict(),
        'assigned_route_id': vehicle.assigned_route_id,
        'maintenance_records': len(records),
        'maintenance_cost_estimate': str(sum((r.estimated_cost or 0) for r in records)),
        'upcoming_maintenance': [r.to_dict() for r in upcoming],
        'days_to_service': _days_until(vehicle.next_service_date, today),
        'days_to_insurance_expiry': _days_until(vehicle.insurance_expiry, today),
        'trip_performance': _trip_stats(session, tenant_id, TripActivity.vehicle_id == vehicle.id),
    }


# ===== DRIVERS =====

def get_driver_fleet_analytics(session: Session, tenant_id: int, days: int = None) -> dict:
    """Driver counts, ratings and licence/medical expiry windows"""
    days = Config.EXPIRY_WARNING_DAYS if days is None else days
    drivers = session.query(TransportDriver).filter_by(tenant_id=tenant_id).all()
    rated = [d.average_rating for d in drivers if d.average_rating]

    return {
        'total_drivers': len(drivers),
        'by_status': dict(Counter(d.status.value for d in drivers)),
        'by_license_type': dict(Counter(d.license_type.value for d in drivers)),
        'assigned_drivers': sum(1 for d in drivers if d.assigned_route_id),
        'average_rating': round(sum(rated) / len(rated), 2) if rated else 0.0,
        'total_safety_incidents': sum(d.safety_incidents or 0 for d in drivers),
        'unfit_drivers': [d.id for d in drivers if d.fitness_to_drive is False],
        'expiring_licenses': [d.id for d in drivers_with_expiring_licenses(session, tenant_id, days)],
        'medical_checks_due': [d.id for d in drivers_due_medical_check(session, tenant_id, days)],
    }


def get_driver_analytics(session: Session, tenant_id: int, driver_id: int) -> dict:
    driver = get_driver(session, tenant_id, driver_id)
    today = date.today()
    license_days = _days_until(driver.license_expiry, today)
    medical_days = _days_until(driver.next_medical_check, today)

    trainings = _count_by(session, DriverTraining.status, DriverTraining.tenant_id == tenant_id,
                          DriverTraining.driver_id == driver.id)

    return {
        'driver': driver.to_dict(),
        'assigned_route_id': driver.assigned_route_id,
        'total_trainings': sum(trainings.values()),
        'completed_trainings': trainings.get(TrainingStatusEnum.COMPLETED.value, 0),
        'days_to_license_expiry': license_days,
        'license_expired': license_days is not None and license_days < 0,
        'days_to_medical_check': medical_days,
        'medical_check_overdue': medical_days is None or medical_days < 0,
        'trip_performance': _trip_stats(session, tenant_id, TripActivity.driver_id == driver.id),
    }


# ===== STUDENT TRANSPORT =====

def get_transport_analytics(session: Session, tenant_id: int, transport_id: int) -> dict:
    """Cached rolling metrics next to a re-derivation from the full trip log"""
    binding = get_transport(session, tenant_id, transport_id)
    cached = metrics_of(binding)
    derived = metrics_from_history(binding.activities)

    consistent = all(
        round(a, 6) == round(b, 6) if isinstance(a, float) else a == b
        for a, b in zip(cached, derived)
    )
    if not consistent:
        logger.warning(f"Rolling metrics of transport {transport_id} drifted from its trip log")

    return {
        'transport_id': binding.id,
        'student_id': binding.student_id,
        'status': binding.status.value,
        'metrics': cached._asdict(),
        'derived_metrics': derived._asdict(),
        'consistent': consistent,
        'history_length': len(binding.activities),
    }


# ===== DASHBOARD =====

def get_dashboard(session: Session, tenant_id: int, days: int = None) -> dict:
    """Summary counts plus alerts an operator should act on"""
    days = Config.EXPIRY_WARNING_DAYS if days is None else days
    routes = get_route_analytics(session, tenant_id)
    fleet = get_fleet_analytics(session, tenant_id, days)
    drivers = get_driver_fleet_analytics(session, tenant_id, days)

    flagged = [b.id for b in session.query(StudentTransport).filter_by(
        tenant_id=tenant_id, status=TransportStatusEnum.ACTIVE, needs_reassignment=True
    ).all()]
    active_students = session.query(StudentTransport).filter_by(
        tenant_id=tenant_id, status=TransportStatusEnum.ACTIVE
    ).count()

    alerts = []
    if drivers['expiring_licenses']:
        alerts.append({'type': 'license_expiry', 'severity': 'high', 'ids': drivers['expiring_licenses'],
                       'message': f"{len(drivers['expiring_licenses'])} driver licence(s) expire within {days} days"})
    if drivers['medical_checks_due']:
        alerts.append({'type': 'medical_check', 'severity': 'medium', 'ids': drivers['medical_checks_due'],
                       'message': f"{len(drivers['medical_checks_due'])} driver(s) due a medical check"})
    if fleet['due_service']:
        alerts.append({'type': 'vehicle_service', 'severity': 'medium', 'ids': fleet['due_service'],
                       'message': f"{len(fleet['due_service'])} vehicle(s) due service or insurance renewal"})
    if fleet['total_vehicles'] and fleet['maintenance_rate'] >= Config.MAINTENANCE_ALERT_RATE:
        alerts.append({'type': 'maintenance_rate', 'severity': 'high', 'ids': [],
                       'message': f"{fleet['maintenance_rate']}% of the fleet is under maintenance"})
    if flagged:
        alerts.append({'type': 'needs_reassignment', 'severity': 'high', 'ids': flagged,
                       'message': f"{len(flagged)} student assignment(s) need a new route"})
    if routes['full_routes']:
        alerts.append({'type': 'route_full', 'severity': 'low', 'ids': routes['full_routes'],
                       'message': f"{len(routes['full_routes'])} route(s) are at capacity"})

    logger.info(f"Built transport dashboard for tenant {tenant_id}: {len(alerts)} alert(s)")
    return {
        'summary': {
            'total_routes': routes['total_routes'],
            'active_routes': routes['by_status'].get(RouteStatusEnum.ACTIVE.value, 0),
            'total_vehicles': fleet['total_vehicles'],
            'active_vehicles': fleet['by_status'].get(VehicleStatusEnum.ACTIVE.value, 0),
            'total_drivers': drivers['total_drivers'],
            'active_drivers': drivers['by_status'].get(DriverStatusEnum.ACTIVE.value, 0),
            'active_students': active_students,
            'utilization_rate': routes['utilization_rate'],
            'on_time_rate': routes['trip_performance']['on_time_rate'],
        },
        'alerts': alerts,
    }


# ===== DISPATCH =====

# scope -> (collection roll-up, single-entity roll-up)
ANALYTICS_SCOPES = {
    'dashboard': (get_dashboard, None),
    'routes': (get_route_analytics, get_single_route_analytics),
    'vehicles': (get_fleet_analytics, get_vehicle_analytics),
    'drivers': (get_driver_fleet_analytics, get_driver_analytics),
    'transports': (None, get_transport_analytics),
}


def get_analytics(session: Session, tenant_id: int, scope: str, entity_id: int = None) -> dict:
    """Route an analytics request to the roll-up for its scope"""
    if scope not in ANALYTICS_SCOPES:
        raise InvalidValue(f"must be one of: {', '.join(ANALYTICS_SCOPES)}", field='scope', value=scope)

    collection, single = ANALYTICS_SCOPES[scope]
    if entity_id is None:
        if collection is None:
            raise MissingField('id', f"is required for {scope} analytics")
        return collection(session, tenant_id)
    if single is None:
        raise InvalidValue(f"{scope} analytics do not take an id", field='id', value=entity_id)
    return single(session, tenant_id, entity_id)
