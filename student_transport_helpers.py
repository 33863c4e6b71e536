"""
Student Transport Helper Functions
Binds students to a route and a pickup/dropoff stop pair, prices the binding
and keeps route occupancy in step with active bindings
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
import logging

from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from transport_models import (
    TransportRoute, StudentTransport, TripActivity,
    TransportTypeEnum, TransportStatusEnum, TransportFrequencyEnum, TripStatusEnum, RouteStatusEnum
)
from transport_errors import (
    TransportError, BindingNotFound, RouteNotOperable, RouteAtCapacity, DuplicateActiveBinding,
    AlreadyCancelled, ConcurrentModification, InvalidValue
)
from transport_validators import TransportValidator as V, TWO_PLACES
from route_helpers import get_route
from stop_helpers import get_stop

logger = logging.getLogger(__name__)

# Surcharge column on the route for each transport type (None means no surcharge)
TYPE_SURCHARGE_FIELDS = {
    TransportTypeEnum.REGULAR: None,
    TransportTypeEnum.SPECIAL_NEEDS: 'special_needs_fee',
    TransportTypeEnum.MEDICAL: 'medical_fee',
    TransportTypeEnum.EMERGENCY: 'emergency_fee',
    TransportTypeEnum.TEMPORARY: None,
}


# ===== FEES =====

def _money(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal('0')


def type_surcharge(route: TransportRoute, transport_type: TransportTypeEnum) -> Decimal:
    field = TYPE_SURCHARGE_FIELDS[transport_type]
    if field is None:
        return Decimal('0')
    if field == 'medical_fee' and route.medical_fee is None:
        return _money(route.emergency_fee)
    return _money(getattr(route, field))


def fee_breakdown(route: TransportRoute, transport_type: TransportTypeEnum) -> dict:
    """Base, distance and surcharge parts of a binding's fee, each to 2 places"""
    base = _money(route.base_fee)
    distance_part = _money(route.distance_fee) * Decimal(str(route.distance_km or 0))
    surcharge = type_surcharge(route, transport_type)
    total = base + distance_part + surcharge
    return {
        'base_fee': base.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
        'distance_component': distance_part.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
        'type_surcharge': surcharge.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
        'total': total.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
    }


def calculate_transport_fee(route: TransportRoute, transport_type) -> Decimal:
    """
    Fee for a binding: base + per-km fee * route distance + type surcharge,
    rounded half-up to 2 decimal places.

    A medical binding on a route without its own medical fee pays the
    emergency fee.
    """
    transport_type = V.enum_value(TransportTypeEnum, transport_type, 'transport_type',
                                  default=TransportTypeEnum.REGULAR)
    return fee_breakdown(route, transport_type)['total']


def _apply_fee(binding: StudentTransport, route: TransportRoute):
    breakdown = fee_breakdown(route, binding.transport_type)
    binding.transport_fee = (breakdown['base_fee'] + breakdown['distance_component']).quantize(TWO_PLACES)
    binding.final_fee = breakdown['total']


# ===== OCCUPANCY =====

def _reserve_seat(session: Session, tenant_id: int, route: TransportRoute):
    """Compare-and-swap: take a seat only while the route is active and below capacity"""
    updated = session.query(TransportRoute).filter(
        TransportRoute.id == route.id,
        TransportRoute.tenant_id == tenant_id,
        TransportRoute.status == RouteStatusEnum.ACTIVE,
        TransportRoute.current_occupancy < TransportRoute.capacity
    ).update({TransportRoute.current_occupancy: TransportRoute.current_occupancy + 1},
             synchronize_session=False)

    if updated == 0:
        current = session.query(TransportRoute.status, TransportRoute.capacity).filter_by(id=route.id).first()
        if current and current.status != RouteStatusEnum.ACTIVE:
            raise RouteNotOperable(route.id, current.status.value)
        logger.warning(f"Route {route.id} is full ({route.capacity} seats)")
        raise RouteAtCapacity(route.id, current.capacity if current else route.capacity)


def _release_seat(session: Session, tenant_id: int, route_id: int):
    session.query(TransportRoute).filter(
        TransportRoute.id == route_id,
        TransportRoute.tenant_id == tenant_id,
        TransportRoute.current_occupancy > 0
    ).update({TransportRoute.current_occupancy: TransportRoute.current_occupancy - 1},
             synchronize_session=False)


def _expire_occupancy(session: Session, *route_ids):
    """Seat counts change through bulk UPDATEs; reload them on routes already in the session"""
    for route_id in set(route_ids):
        route = session.identity_map.get(Session.identity_key(TransportRoute, route_id))
        if route is not None:
            session.expire(route, ['current_occupancy'])


def _require_operable(route: TransportRoute):
    if not route.is_operable:
        logger.warning(f"Route {route.id} is {route.status.value}; cannot take students")
        raise RouteNotOperable(route.id, route.status.value)


def _check_no_active_binding(session: Session, tenant_id: int, student_id: int, exclude_id=None):
    query = session.query(StudentTransport).filter_by(
        tenant_id=tenant_id, student_id=student_id, status=TransportStatusEnum.ACTIVE
    )
    if exclude_id:
        query = query.filter(StudentTransport.id != exclude_id)
    existing = query.first()
    if existing:
        logger.warning(f"Student {student_id} already has active transport {existing.id}")
        raise DuplicateActiveBinding(student_id, existing_transport_id=existing.id)


# ===== TRIP LOG =====

def append_trip_activity(session: Session, binding: StudentTransport, status: TripStatusEnum,
                         actor_id: int = None, **fields) -> TripActivity:
    """Add the next entry to a binding's append-only trip log, snapshotting who operated the route"""
    last_sequence = session.query(func.max(TripActivity.sequence)).filter(
        TripActivity.transport_id == binding.id
    ).scalar() or 0

    route = binding.route
    activity = TripActivity(
        tenant_id=binding.tenant_id,
        transport_id=binding.id,
        sequence=last_sequence + 1,
        trip_date=fields.pop('trip_date', None) or date.today(),
        status=status,
        route_id=binding.route_id,
        vehicle_id=route.assigned_vehicle_id if route else None,
        driver_id=route.assigned_driver_id if route else None,
        recorded_by=actor_id,
        **fields
    )
    session.add(activity)
    return activity


# ===== ASSIGNMENT MANAGEMENT =====

def get_transport(session: Session, tenant_id: int, transport_id: int) -> StudentTransport:
    binding = session.query(StudentTransport).filter_by(id=transport_id, tenant_id=tenant_id).first()
    if not binding:
        raise BindingNotFound(transport_id)
    return binding


def list_transports(session: Session, tenant_id: int, student_id: int = None, status=None,
                    transport_type=None, route_id: int = None, stop_id: int = None,
                    needs_reassignment: bool = None) -> list:
    """Student transport assignments for a tenant, newest first"""
    query = session.query(StudentTransport).filter_by(tenant_id=tenant_id)

    if student_id:
        query = query.filter(StudentTransport.student_id == student_id)
    if status:
        query = query.filter(StudentTransport.status == V.enum_value(TransportStatusEnum, status, 'status'))
    if transport_type:
        query = query.filter(StudentTransport.transport_type ==
                             V.enum_value(TransportTypeEnum, transport_type, 'type'))
    if route_id:
        query = query.filter(StudentTransport.route_id == route_id)
    if stop_id:
        query = query.filter(or_(StudentTransport.pickup_stop_id == stop_id,
                                 StudentTransport.dropoff_stop_id == stop_id))
    if needs_reassignment is not None:
        query = query.filter(StudentTransport.needs_reassignment == needs_reassignment)

    return query.order_by(StudentTransport.created_at.desc(), StudentTransport.id.desc()).all()


def assign_transport(session: Session, tenant_id: int, data: dict, actor_id: int = None) -> StudentTransport:
    """
    Bind a student to a route with a pickup and dropoff stop.

    Steps:
        1. route exists and is active
        2. both stops exist in this school
        3. the student holds no other active assignment
        4. fee = base + per-km * distance + type surcharge
        5. pickup/dropoff times copied from the route

    The active-assignment uniqueness and the seat count are both enforced by
    the database; the checks above only fail fast.
    """
    V.require(data, 'student_id', 'route_id', 'pickup_stop_id', 'dropoff_stop_id')
    student_id = V.int_value(data['student_id'], 'student_id', minimum=1)

    route = get_route(session, tenant_id, data['route_id'])
    _require_operable(route)

    pickup_stop = get_stop(session, tenant_id, data['pickup_stop_id'], field='pickup_stop_id')
    dropoff_stop = get_stop(session, tenant_id, data['dropoff_stop_id'], field='dropoff_stop_id')

    transport_type = V.enum_value(TransportTypeEnum, data.get('transport_type'), 'transport_type',
                                  default=TransportTypeEnum.REGULAR)
    frequency = V.enum_value(TransportFrequencyEnum, data.get('frequency'), 'frequency',
                             default=TransportFrequencyEnum.DAILY)
    start_date = V.date_value(data.get('start_date'), 'start_date') or date.today()
    end_date = V.date_value(data.get('end_date'), 'end_date')
    V.date_window(start_date, end_date)

    _check_no_active_binding(session, tenant_id, student_id)

    binding = StudentTransport(
        tenant_id=tenant_id,
        student_id=student_id,
        route_id=route.id,
        pickup_stop_id=pickup_stop.id,
        dropoff_stop_id=dropoff_stop.id,
        transport_type=transport_type,
        status=TransportStatusEnum.ACTIVE,
        frequency=frequency,
        start_date=start_date,
        end_date=end_date,
        pickup_time=route.pickup_time,
        dropoff_time=route.dropoff_time,
        special_requirements=V.text(data.get('special_requirements'), 'special_requirements'),
        notes=V.text(data.get('notes'), 'notes'),
        needs_reassignment=False,
        created_by=actor_id,
        updated_by=actor_id,
    )
    _apply_fee(binding, route)
    session.add(binding)

    try:
        # Insert first so a duplicate never holds a seat
        session.flush()
        _reserve_seat(session, tenant_id, route)
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Active assignment for student {student_id} rejected by the database: {e.orig}")
        raise DuplicateActiveBinding(student_id)
    except (RouteAtCapacity, RouteNotOperable):
        session.rollback()
        raise

    session.refresh(route)
    logger.info(f"Assigned student {student_id} to route {route.id} as transport {binding.id} "
                f"(fee {binding.final_fee}, tenant {tenant_id})")
    return binding


def update_transport(session: Session, tenant_id: int, transport_id: int, data: dict,
                     actor_id: int = None) -> StudentTransport:
    """
    Change an assignment. A new route or stop is validated exactly as on
    creation; seats move with the assignment; the fee is recomputed when the
    route or transport type changes. Pass 'version' to guard against
    overwriting a concurrent change.
    """
    binding = get_transport(session, tenant_id, transport_id)

    if 'version' in data and V.int_value(data['version'], 'version') != binding.version:
        raise ConcurrentModification("Transport assignment was changed by someone else; reload and retry",
                                     transport_id=transport_id, current_version=binding.version)

    old_route_id = binding.route_id
    was_active = binding.is_active
    route = binding.route
    reprice = False

    try:
        if 'status' in data:
            new_status = V.enum_value(TransportStatusEnum, data['status'], 'status')
            if new_status == TransportStatusEnum.CANCELLED and binding.status != TransportStatusEnum.CANCELLED:
                raise InvalidValue("use the cancel operation to cancel an assignment", field='status')
            if new_status == TransportStatusEnum.ACTIVE and not was_active:
                if binding.status == TransportStatusEnum.CANCELLED:
                    raise InvalidValue("a cancelled assignment cannot be reactivated", field='status')
                _check_no_active_binding(session, tenant_id, binding.student_id, exclude_id=binding.id)
            binding.status = new_status

        if 'route_id' in data and V.int_value(data['route_id'], 'route_id') != old_route_id:
            route = get_route(session, tenant_id, data['route_id'])
            _require_operable(route)
            binding.route_id = route.id
            binding.pickup_time = route.pickup_time
            binding.dropoff_time = route.dropoff_time
            binding.needs_reassignment = False
            reprice = True
        elif binding.is_active and not was_active:
            _require_operable(route)

        if 'pickup_stop_id' in data:
            binding.pickup_stop_id = get_stop(session, tenant_id, data['pickup_stop_id'], field='pickup_stop_id').id
        if 'dropoff_stop_id' in data:
            binding.dropoff_stop_id = get_stop(session, tenant_id, data['dropoff_stop_id'], field='dropoff_stop_id').id

        if 'transport_type' in data:
            new_type = V.enum_value(TransportTypeEnum, data['transport_type'], 'transport_type',
                                    default=binding.transport_type)
            reprice = reprice or new_type != binding.transport_type
            binding.transport_type = new_type

        if 'frequency' in data:
            binding.frequency = V.enum_value(TransportFrequencyEnum, data['frequency'], 'frequency',
                                             default=binding.frequency)
        if 'start_date' in data:
            binding.start_date = V.date_value(data['start_date'], 'start_date') or binding.start_date
        if 'end_date' in data:
            binding.end_date = V.date_value(data['end_date'], 'end_date')
        V.date_window(binding.start_date, binding.end_date)

        if 'special_requirements' in data:
            binding.special_requirements = V.text(data['special_requirements'], 'special_requirements')
        if 'notes' in data:
            binding.notes = V.text(data['notes'], 'notes')

        if reprice:
            _apply_fee(binding, route)
    except TransportError:
        session.rollback()
        raise

    binding.updated_by = actor_id

    try:
        session.flush()
        held_seat = was_active
        needs_seat = binding.is_active
        if held_seat and (not needs_seat or binding.route_id != old_route_id):
            _release_seat(session, tenant_id, old_route_id)
        if needs_seat and (not held_seat or binding.route_id != old_route_id):
            _reserve_seat(session, tenant_id, route)
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Update of transport {transport_id} rejected by the database: {e.orig}")
        raise DuplicateActiveBinding(binding.student_id, transport_id=transport_id)
    except StaleDataError:
        session.rollback()
        raise ConcurrentModification("Transport assignment was changed concurrently; reload and retry",
                                     transport_id=transport_id)
    except (RouteAtCapacity, RouteNotOperable):
        session.rollback()
        raise

    _expire_occupancy(session, old_route_id, binding.route_id)
    session.refresh(binding)
    logger.info(f"Updated transport {binding.id} (route {old_route_id} -> {binding.route_id}, "
                f"status {binding.status.value}) for tenant {tenant_id}")
    return binding


def resync_transport_times(session: Session, tenant_id: int, transport_id: int,
                           actor_id: int = None) -> StudentTransport:
    """Copy the route's current pickup/dropoff times onto the assignment"""
    binding = get_transport(session, tenant_id, transport_id)
    route = binding.route

    binding.pickup_time = route.pickup_time
    binding.dropoff_time = route.dropoff_time
    binding.updated_by = actor_id
    try:
        session.commit()
    except StaleDataError:
        session.rollback()
        raise ConcurrentModification("Transport assignment was changed concurrently; reload and retry",
                                     transport_id=transport_id)

    logger.info(f"Re-synced times of transport {binding.id} from route {route.id}")
    return binding


def cancel_transport(session: Session, tenant_id: int, transport_id: int, reason: str = None,
                     actor_id: int = None) -> StudentTransport:
    """
    Cancel an assignment: status cancelled, end date today, seat released and
    a terminal entry carrying the reason appended to the trip log.
    A second cancel fails with AlreadyCancelled and changes nothing.
    """
    binding = get_transport(session, tenant_id, transport_id)
    if binding.status == TransportStatusEnum.CANCELLED:
        logger.warning(f"Transport {transport_id} is already cancelled")
        raise AlreadyCancelled(transport_id)

    was_active = binding.is_active
    today = date.today()

    binding.status = TransportStatusEnum.CANCELLED
    binding.end_date = today
    binding.updated_by = actor_id
    append_trip_activity(session, binding, TripStatusEnum.CANCELLED, actor_id=actor_id,
                         trip_date=today, notes=V.text(reason, 'reason'), is_terminal=True)

    try:
        session.flush()
        if was_active:
            _release_seat(session, tenant_id, binding.route_id)
        session.commit()
    except (StaleDataError, IntegrityError):
        session.rollback()
        current = session.query(StudentTransport.status).filter_by(id=transport_id).scalar()
        if current == TransportStatusEnum.CANCELLED:
            raise AlreadyCancelled(transport_id)
        raise ConcurrentModification("Transport assignment was changed concurrently; reload and retry",
                                     transport_id=transport_id)

    _expire_occupancy(session, binding.route_id)
    logger.info(f"Cancelled transport {binding.id} for student {binding.student_id} "
                f"(tenant {tenant_id}): {reason or 'no reason given'}")
    return binding
