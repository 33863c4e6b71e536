"""
Driver Record Helper Functions
CRUD for drivers plus licence and medical-check compliance scans
"""

from datetime import date, timedelta
import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from transport_models import TransportDriver, DriverTraining, LicenseTypeEnum, DriverStatusEnum, TrainingStatusEnum
from transport_errors import TransportError, ResourceNotFound, ResourceInUse, DuplicateCode, InvalidValue
from transport_validators import TransportValidator as V

logger = logging.getLogger(__name__)

UNIQUE_FIELDS = ('driver_code', 'license_number')
MEDICAL_CHECK_INTERVAL_DAYS = 365


def build_full_name(first_name, middle_name, last_name) -> str:
    return ' '.join(part for part in (first_name, middle_name, last_name) if part)


def _apply_driver_fields(driver: TransportDriver, data: dict):
    if 'driver_code' in data:
        driver.driver_code = V.text(data['driver_code'], 'driver_code', max_length=20)
    for field in ('first_name', 'middle_name', 'last_name'):
        if field in data:
            setattr(driver, field, V.text(data[field], field, max_length=50))
    if 'phone' in data:
        driver.phone = V.text(data['phone'], 'phone', max_length=20)
    if 'license_number' in data:
        driver.license_number = V.text(data['license_number'], 'license_number', max_length=50)
    if 'license_type' in data:
        driver.license_type = V.enum_value(LicenseTypeEnum, data['license_type'], 'license_type',
                                           default=LicenseTypeEnum.COMMERCIAL)
    if 'license_expiry' in data:
        driver.license_expiry = V.date_value(data['license_expiry'], 'license_expiry')
    if 'last_medical_check' in data:
        driver.last_medical_check = V.date_value(data['last_medical_check'], 'last_medical_check')
    if 'next_medical_check' in data:
        driver.next_medical_check = V.date_value(data['next_medical_check'], 'next_medical_check')
    if 'fitness_to_drive' in data:
        driver.fitness_to_drive = V.bool_value(data['fitness_to_drive'], default=True)
    if 'medical_restrictions' in data:
        driver.medical_restrictions = V.text(data['medical_restrictions'], 'medical_restrictions')
    if 'average_rating' in data:
        driver.average_rating = V.float_value(data['average_rating'], 'average_rating',
                                              default=0.0, minimum=0, maximum=5)
    if 'safety_incidents' in data:
        driver.safety_incidents = V.int_value(data['safety_incidents'], 'safety_incidents', default=0, minimum=0)
    if 'status' in data:
        driver.status = V.enum_value(DriverStatusEnum, data['status'], 'status', default=DriverStatusEnum.ACTIVE)
    if 'notes' in data:
        driver.notes = V.text(data['notes'], 'notes')

    driver.full_name = build_full_name(driver.first_name, driver.middle_name, driver.last_name)


def _check_driver_unique(session: Session, tenant_id: int, values: dict, exclude_id=None):
    for field in UNIQUE_FIELDS:
        query = session.query(TransportDriver).filter(
            TransportDriver.tenant_id == tenant_id,
            getattr(TransportDriver, field) == values[field]
        )
        if exclude_id:
            query = query.filter(TransportDriver.id != exclude_id)
        if query.first():
            logger.warning(f"Duplicate driver {field} '{values[field]}' for tenant {tenant_id}")
            raise DuplicateCode(field, values[field])


def _commit_driver(session: Session, tenant_id: int, driver: TransportDriver):
    values = {field: getattr(driver, field) for field in UNIQUE_FIELDS}
    driver_id = driver.id
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Driver write rejected by the database: {e.orig}")
        _check_driver_unique(session, tenant_id, values, exclude_id=driver_id)
        raise DuplicateCode('driver_code', values['driver_code'])
    session.refresh(driver)
    return driver


# ===== DRIVER MANAGEMENT =====

def create_driver(session: Session, tenant_id: int, data: dict, actor_id: int = None) -> TransportDriver:
    """Register a driver; code and licence number are unique per school"""
    V.require(data, 'driver_code', 'first_name', 'last_name', 'license_number')

    driver = TransportDriver(
        tenant_id=tenant_id,
        license_type=LicenseTypeEnum.COMMERCIAL,
        status=DriverStatusEnum.ACTIVE,
        fitness_to_drive=True,
        average_rating=0.0,
        safety_incidents=0,
        created_by=actor_id,
        updated_by=actor_id,
    )
    _apply_driver_fields(driver, data)
    _check_driver_unique(session, tenant_id, {f: getattr(driver, f) for f in UNIQUE_FIELDS})

    session.add(driver)
    _commit_driver(session, tenant_id, driver)

    logger.info(f"Created driver {driver.id} ({driver.full_name}) for tenant {tenant_id}")
    return driver


def get_driver(session: Session, tenant_id: int, driver_id: int) -> TransportDriver:
    driver = session.query(TransportDriver).filter_by(id=driver_id, tenant_id=tenant_id).first()
    if not driver:
        raise ResourceNotFound('driver', driver_id)
    return driver


def list_drivers(session: Session, tenant_id: int, status=None, license_type=None, search: str = None) -> list:
    """Drivers for a tenant, newest first"""
    query = session.query(TransportDriver).filter_by(tenant_id=tenant_id)

    if status:
        query = query.filter(TransportDriver.status == V.enum_value(DriverStatusEnum, status, 'status'))
    if license_type:
        query = query.filter(TransportDriver.license_type == V.enum_value(LicenseTypeEnum, license_type, 'type'))
    if search:
        search_pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                TransportDriver.full_name.ilike(search_pattern),
                TransportDriver.driver_code.ilike(search_pattern),
                TransportDriver.license_number.ilike(search_pattern),
                TransportDriver.phone.ilike(search_pattern)
            )
        )

    return query.order_by(TransportDriver.created_at.desc(), TransportDriver.id.desc()).all()


def update_driver(session: Session, tenant_id: int, driver_id: int, data: dict,
                  actor_id: int = None) -> TransportDriver:
    """Merge fields into a driver record; full name follows the name parts"""
    driver = get_driver(session, tenant_id, driver_id)

    try:
        for field in ('driver_code', 'first_name', 'last_name', 'license_number'):
            if field in data:
                V.require(data, field)

        _apply_driver_fields(driver, data)
        _check_driver_unique(session, tenant_id, {f: getattr(driver, f) for f in UNIQUE_FIELDS},
                             exclude_id=driver.id)
    except TransportError:
        session.rollback()
        raise
    driver.updated_by = actor_id

    _commit_driver(session, tenant_id, driver)
    logger.info(f"Updated driver {driver.id} for tenant {tenant_id}")
    return driver


def delete_driver(session: Session, tenant_id: int, driver_id: int) -> bool:
    driver = get_driver(session, tenant_id, driver_id)

    if driver.assigned_route_id:
        logger.warning(f"Refused to delete driver {driver_id}: bound to route {driver.assigned_route_id}")
        raise ResourceInUse("Cannot delete a driver who is assigned to a route. Unassign them first.",
                            resource='driver', resource_id=driver_id, route_id=driver.assigned_route_id)

    session.delete(driver)
    session.commit()
    logger.info(f"Deleted driver {driver_id} for tenant {tenant_id}")
    return True


# ===== COMPLIANCE =====

def update_medical_check(session: Session, tenant_id: int, driver_id: int, data: dict,
                         actor_id: int = None) -> TransportDriver:
    """
    Record a completed medical check.

    Args:
        data: check_date (default today), next_check_date (default one year on),
              fitness_to_drive, medical_restrictions
    """
    driver = get_driver(session, tenant_id, driver_id)

    check_date = V.date_value(data.get('check_date'), 'check_date') or date.today()
    next_check = V.date_value(data.get('next_check_date'), 'next_check_date') or \
        check_date + timedelta(days=MEDICAL_CHECK_INTERVAL_DAYS)
    if next_check <= check_date:
        raise InvalidValue("must be after check_date", field='next_check_date')

    driver.last_medical_check = check_date
    driver.next_medical_check = next_check
    driver.fitness_to_drive = V.bool_value(data.get('fitness_to_drive'), default=True)
    if 'medical_restrictions' in data:
        driver.medical_restrictions = V.text(data['medical_restrictions'], 'medical_restrictions')
    driver.updated_by = actor_id

    session.commit()
    logger.info(f"Medical check recorded for driver {driver.id}: fit={driver.fitness_to_drive}, "
                f"next due {next_check.isoformat()}")
    return driver


def add_training_record(session: Session, tenant_id: int, driver_id: int, data: dict,
                        actor_id: int = None) -> DriverTraining:
    """
    Append a training record to a driver.

    Args:
        data: training_name, training_date, trainer (required); completion_date, score.
              The record is completed when a completion date is given, in progress otherwise.
    """
    driver = get_driver(session, tenant_id, driver_id)
    V.require(data, 'training_name', 'training_date', 'trainer')

    training_date = V.date_value(data['training_date'], 'training_date')
    completion_date = V.date_value(data.get('completion_date'), 'completion_date')
    if completion_date and completion_date < training_date:
        raise InvalidValue("cannot be before training_date", field='completion_date')

    record = DriverTraining(
        tenant_id=tenant_id,
        driver_id=driver.id,
        training_name=V.text(data['training_name'], 'training_name', max_length=150),
        training_date=training_date,
        completion_date=completion_date,
        trainer=V.text(data['trainer'], 'trainer', max_length=100),
        status=TrainingStatusEnum.COMPLETED if completion_date else TrainingStatusEnum.IN_PROGRESS,
        score=V.float_value(data.get('score'), 'score', minimum=0),
        created_by=actor_id,
    )
    session.add(record)
    session.commit()

    logger.info(f"Training '{record.training_name}' ({record.status.value}) added for driver {driver.id}")
    return record


def list_training_records(session: Session, tenant_id: int, driver_id: int) -> list:
    driver = get_driver(session, tenant_id, driver_id)
    return session.query(DriverTraining).filter_by(tenant_id=tenant_id, driver_id=driver.id).order_by(
        DriverTraining.training_date, DriverTraining.id
    ).all()


def drivers_with_expiring_licenses(session: Session, tenant_id: int, days: int = 30, today: date = None) -> list:
    """Drivers (not terminated) whose licence expires within `days` days, expired ones included"""
    today = today or date.today()
    cutoff = today + timedelta(days=days)

    return session.query(TransportDriver).filter(
        TransportDriver.tenant_id == tenant_id,
        TransportDriver.status != DriverStatusEnum.TERMINATED,
        TransportDriver.license_expiry.isnot(None),
        TransportDriver.license_expiry <= cutoff
    ).order_by(TransportDriver.license_expiry, TransportDriver.id).all()


def drivers_due_medical_check(session: Session, tenant_id: int, days: int = 30, today: date = None) -> list:
    """Drivers whose next medical check is due within `days` days or who have never had one"""
    today = today or date.today()
    cutoff = today + timedelta(days=days)

    return session.query(TransportDriver).filter(
        TransportDriver.tenant_id == tenant_id,
        TransportDriver.status != DriverStatusEnum.TERMINATED,
        or_(
            TransportDriver.next_medical_check.is_(None),
            TransportDriver.next_medical_check <= cutoff
        )
    ).order_by(TransportDriver.next_medical_check, TransportDriver.id).all()
