"""
Vehicle Record Helper Functions
CRUD for fleet vehicles, maintenance scheduling and service-due scans
"""

from datetime import date, timedelta
import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from transport_models import (
    TransportVehicle, VehicleMaintenance,
    VehicleTypeEnum, VehicleStatusEnum, FuelTypeEnum, MaintenancePriorityEnum
)
from transport_errors import TransportError, ResourceNotFound, ResourceInUse, DuplicateCode
from transport_validators import TransportValidator as V

logger = logging.getLogger(__name__)


def _apply_vehicle_fields(vehicle: TransportVehicle, data: dict):
    if 'vehicle_code' in data:
        vehicle.vehicle_code = V.text(data['vehicle_code'], 'vehicle_code', max_length=20)
    if 'registration_number' in data:
        vehicle.registration_number = V.text(data['registration_number'], 'registration_number', max_length=20)
    if 'vehicle_name' in data:
        vehicle.vehicle_name = V.text(data['vehicle_name'], 'vehicle_name', max_length=100)
    if 'model' in data:
        vehicle.model = V.text(data['model'], 'model', max_length=100)
    if 'notes' in data:
        vehicle.notes = V.text(data['notes'], 'notes')

    if 'vehicle_type' in data:
        vehicle.vehicle_type = V.enum_value(VehicleTypeEnum, data['vehicle_type'], 'vehicle_type',
                                            default=VehicleTypeEnum.BUS)
    if 'fuel_type' in data:
        vehicle.fuel_type = V.enum_value(FuelTypeEnum, data['fuel_type'], 'fuel_type')
    if 'status' in data:
        vehicle.status = V.enum_value(VehicleStatusEnum, data['status'], 'status',
                                      default=VehicleStatusEnum.ACTIVE)
    if 'capacity' in data:
        vehicle.capacity = V.int_value(data['capacity'], 'capacity', default=40, minimum=1)
    if 'mileage' in data:
        vehicle.mileage = V.float_value(data['mileage'], 'mileage', default=0.0, minimum=0)
    if 'next_service_date' in data:
        vehicle.next_service_date = V.date_value(data['next_service_date'], 'next_service_date')
    if 'insurance_expiry' in data:
        vehicle.insurance_expiry = V.date_value(data['insurance_expiry'], 'insurance_expiry')


UNIQUE_FIELDS = ('vehicle_code', 'registration_number')


def _check_vehicle_unique(session: Session, tenant_id: int, values: dict, exclude_id=None):
    for field in UNIQUE_FIELDS:
        query = session.query(TransportVehicle).filter(
            TransportVehicle.tenant_id == tenant_id,
            getattr(TransportVehicle, field) == values[field]
        )
        if exclude_id:
            query = query.filter(TransportVehicle.id != exclude_id)
        if query.first():
            logger.warning(f"Duplicate vehicle {field} '{values[field]}' for tenant {tenant_id}")
            raise DuplicateCode(field, values[field])


def _commit_vehicle(session: Session, tenant_id: int, vehicle: TransportVehicle):
    values = {field: getattr(vehicle, field) for field in UNIQUE_FIELDS}
    vehicle_id = vehicle.id
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Vehicle write rejected by the database: {e.orig}")
        # A concurrent writer took the code or the registration; report whichever is now taken
        _check_vehicle_unique(session, tenant_id, values, exclude_id=vehicle_id)
        raise DuplicateCode('vehicle_code', values['vehicle_code'])
    session.refresh(vehicle)
    return vehicle


# ===== VEHICLE MANAGEMENT =====

def create_vehicle(session: Session, tenant_id: int, data: dict, actor_id: int = None) -> TransportVehicle:
    """Register a vehicle; code and registration number are unique per school"""
    V.require(data, 'vehicle_code', 'registration_number', 'vehicle_name')

    vehicle = TransportVehicle(
        tenant_id=tenant_id,
        vehicle_type=VehicleTypeEnum.BUS,
        status=VehicleStatusEnum.ACTIVE,
        capacity=40,
        created_by=actor_id,
        updated_by=actor_id,
    )
    _apply_vehicle_fields(vehicle, data)
    _check_vehicle_unique(session, tenant_id, {f: getattr(vehicle, f) for f in UNIQUE_FIELDS},
                          exclude_id=vehicle.id)

    session.add(vehicle)
    _commit_vehicle(session, tenant_id, vehicle)

    logger.info(f"Created vehicle {vehicle.id} ({vehicle.registration_number}) for tenant {tenant_id}")
    return vehicle


def get_vehicle(session: Session, tenant_id: int, vehicle_id: int) -> TransportVehicle:
    vehicle = session.query(TransportVehicle).filter_by(id=vehicle_id, tenant_id=tenant_id).first()
    if not vehicle:
        raise ResourceNotFound('vehicle', vehicle_id)
    return vehicle


def list_vehicles(session: Session, tenant_id: int, status=None, vehicle_type=None, search: str = None) -> list:
    """Vehicles for a tenant, newest first"""
    query = session.query(TransportVehicle).filter_by(tenant_id=tenant_id)

    if status:
        query = query.filter(TransportVehicle.status == V.enum_value(VehicleStatusEnum, status, 'status'))
    if vehicle_type:
        query = query.filter(TransportVehicle.vehicle_type == V.enum_value(VehicleTypeEnum, vehicle_type, 'type'))
    if search:
        search_pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                TransportVehicle.vehicle_code.ilike(search_pattern),
                TransportVehicle.registration_number.ilike(search_pattern),
                TransportVehicle.vehicle_name.ilike(search_pattern)
            )
        )

    return query.order_by(TransportVehicle.created_at.desc(), TransportVehicle.id.desc()).all()


def update_vehicle(session: Session, tenant_id: int, vehicle_id: int, data: dict,
                   actor_id: int = None) -> TransportVehicle:
    """Merge fields into a vehicle record; route binding is not editable here"""
    vehicle = get_vehicle(session, tenant_id, vehicle_id)

    try:
        for field in ('vehicle_code', 'registration_number', 'vehicle_name'):
            if field in data:
                V.require(data, field)

        _apply_vehicle_fields(vehicle, data)
        _check_vehicle_unique(session, tenant_id, {f: getattr(vehicle, f) for f in UNIQUE_FIELDS},
                              exclude_id=vehicle.id)
    except TransportError:
        session.rollback()
        raise
    vehicle.updated_by = actor_id

    _commit_vehicle(session, tenant_id, vehicle)
    logger.info(f"Updated vehicle {vehicle.id} for tenant {tenant_id}")
    return vehicle


def delete_vehicle(session: Session, tenant_id: int, vehicle_id: int) -> bool:
    vehicle = get_vehicle(session, tenant_id, vehicle_id)

    if vehicle.assigned_route_id:
        logger.warning(f"Refused to delete vehicle {vehicle_id}: bound to route {vehicle.assigned_route_id}")
        raise ResourceInUse("Cannot delete a vehicle that is assigned to a route. Unassign it first.",
                            resource='vehicle', resource_id=vehicle_id, route_id=vehicle.assigned_route_id)

    session.delete(vehicle)
    session.commit()
    logger.info(f"Deleted vehicle {vehicle_id} for tenant {tenant_id}")
    return True


# ===== MAINTENANCE =====

def schedule_maintenance(session: Session, tenant_id: int, vehicle_id: int, data: dict,
                         actor_id: int = None) -> VehicleMaintenance:
    """
    Record a maintenance entry for a vehicle.
    Critical priority takes the vehicle out of service until it is set active again.
    """
    vehicle = get_vehicle(session, tenant_id, vehicle_id)
    V.require(data, 'maintenance_type', 'scheduled_date')

    record = VehicleMaintenance(
        tenant_id=tenant_id,
        vehicle_id=vehicle.id,
        maintenance_type=V.text(data['maintenance_type'], 'maintenance_type', max_length=50),
        description=V.text(data.get('description'), 'description'),
        estimated_cost=V.decimal_value(data.get('estimated_cost'), 'estimated_cost', default=0),
        scheduled_date=V.date_value(data['scheduled_date'], 'scheduled_date'),
        priority=V.enum_value(MaintenancePriorityEnum, data.get('priority'), 'priority',
                              default=MaintenancePriorityEnum.MEDIUM),
        mileage_at_schedule=vehicle.mileage,
        created_by=actor_id,
    )
    session.add(record)

    if record.priority == MaintenancePriorityEnum.CRITICAL:
        vehicle.status = VehicleStatusEnum.MAINTENANCE
        vehicle.updated_by = actor_id
        logger.warning(f"Vehicle {vehicle.id} moved to maintenance (critical: {record.maintenance_type})")

    if vehicle.next_service_date is None or record.scheduled_date < vehicle.next_service_date:
        vehicle.next_service_date = record.scheduled_date

    session.commit()
    session.refresh(record)
    logger.info(f"Scheduled {record.priority.value} maintenance {record.id} for vehicle {vehicle.id}")
    return record


def vehicles_due_service(session: Session, tenant_id: int, days: int = 30, today: date = None) -> list:
    """Vehicles whose service or insurance falls due within the next `days` days (overdue included)"""
    today = today or date.today()
    cutoff = today + timedelta(days=days)

    return session.query(TransportVehicle).filter(
        TransportVehicle.tenant_id == tenant_id,
        TransportVehicle.status != VehicleStatusEnum.DECOMMISSIONED,
        or_(
            TransportVehicle.next_service_date <= cutoff,
            TransportVehicle.insurance_expiry <= cutoff
        )
    ).order_by(TransportVehicle.next_service_date, TransportVehicle.id).all()
