"""
Transport Management Models
Multi-tenant tables for stops, routes, vehicles, drivers, student transport
assignments and the append-only trip activity log
"""

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Time, Date, Enum, Float,
    Numeric, Index, UniqueConstraint, CheckConstraint, event
)
from sqlalchemy.orm import relationship, validates
from models import Base
from datetime import datetime, date
from decimal import Decimal
import enum


def _enum(enum_cls, **kwargs):
    """Enum column storing the lowercase value rather than the member name"""
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj], **kwargs)


def _iso(value):
    return value.isoformat() if value is not None else None


def _money(value):
    return str(value) if value is not None else None


# ===== ENUMS =====
class StopTypeEnum(enum.Enum):
    PICKUP = "pickup"
    DROPOFF = "dropoff"
    WAYPOINT = "waypoint"
    EMERGENCY = "emergency"


class StopStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TEMPORARILY_CLOSED = "temporarily_closed"
    PERMANENTLY_CLOSED = "permanently_closed"


class RouteTypeEnum(enum.Enum):
    SCHOOL_PICKUP = "school_pickup"
    SCHOOL_DROPOFF = "school_dropoff"
    ROUND_TRIP = "round_trip"
    SPECIAL_NEEDS = "special_needs"
    EMERGENCY = "emergency"


class RouteStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    SUSPENDED = "suspended"


class VehicleTypeEnum(enum.Enum):
    BUS = "bus"
    VAN = "van"
    MINI_BUS = "mini_bus"
    CAR = "car"
    SUV = "suv"
    SPECIAL_NEEDS_VEHICLE = "special_needs_vehicle"
    EMERGENCY_VEHICLE = "emergency_vehicle"


class VehicleStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"
    DECOMMISSIONED = "decommissioned"


class FuelTypeEnum(enum.Enum):
    DIESEL = "diesel"
    PETROL = "petrol"
    CNG = "cng"
    ELECTRIC = "electric"
    HYBRID = "hybrid"


class MaintenancePriorityEnum(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LicenseTypeEnum(enum.Enum):
    COMMERCIAL = "commercial"
    PRIVATE = "private"
    PUBLIC_SERVICE = "public_service"
    HEAVY_DUTY = "heavy_duty"


class DriverStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    ON_LEAVE = "on_leave"


class TrainingStatusEnum(enum.Enum):
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class TransportTypeEnum(enum.Enum):
    REGULAR = "regular"
    SPECIAL_NEEDS = "special_needs"
    MEDICAL = "medical"
    EMERGENCY = "emergency"
    TEMPORARY = "temporary"


class TransportStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransportFrequencyEnum(enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ONE_TIME = "one_time"
    CUSTOM = "custom"


class TripStatusEnum(enum.Enum):
    COMPLETED = "completed"
    MISSED = "missed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


# ===== MODELS =====

class TransportStop(Base):
    """Fixed geographic pickup/dropoff points"""
    __tablename__ = 'transport_stops'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Stop Information
    stop_code = Column(String(20), nullable=True)
    stop_name = Column(String(100), nullable=False)
    address = Column(Text, nullable=True)
    landmark = Column(String(200), nullable=True)  # Nearby landmark

    # Location
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    stop_type = Column(_enum(StopTypeEnum), default=StopTypeEnum.PICKUP, nullable=False)
    status = Column(_enum(StopStatusEnum), default=StopStatusEnum.ACTIVE, nullable=False)
    capacity_estimate = Column(Integer, default=0)  # Students expected at this stop
    safety_rating = Column(Float, nullable=True)  # 0-5

    # Metadata
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'stop_code', name='uq_transport_stop_tenant_code'),
        CheckConstraint('latitude >= -90 AND latitude <= 90', name='ck_transport_stop_latitude'),
        CheckConstraint('longitude >= -180 AND longitude <= 180', name='ck_transport_stop_longitude'),
        Index('idx_transport_stop_tenant', 'tenant_id'),
        Index('idx_transport_stop_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f'<TransportStop {self.stop_name} ({self.latitude}, {self.longitude})>'

    def to_dict(self):
        return {
            'id': self.id,
            'stop_code': self.stop_code,
            'stop_name': self.stop_name,
            'address': self.address,
            'landmark': self.landmark,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'stop_type': self.stop_type.value if self.stop_type else None,
            'status': self.status.value if self.status else None,
            'capacity_estimate': self.capacity_estimate,
            'safety_rating': self.safety_rating,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class TransportRoute(Base):
    """Transport routes"""
    __tablename__ = 'transport_routes'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Route Information
    route_code = Column(String(30), nullable=True)  # Short code like R1, OPT-20250101-001
    route_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    route_type = Column(_enum(RouteTypeEnum), default=RouteTypeEnum.ROUND_TRIP, nullable=False)
    status = Column(_enum(RouteStatusEnum), default=RouteStatusEnum.ACTIVE, nullable=False)
    start_location = Column(String(255), nullable=False)
    end_location = Column(String(255), nullable=False)

    # Geometry and capacity
    distance_km = Column(Float, default=0.0)
    estimated_duration_minutes = Column(Integer, default=0)
    capacity = Column(Integer, default=40, nullable=False)
    current_occupancy = Column(Integer, default=0, nullable=False)

    # Bound resources (one vehicle and one driver at most)
    assigned_vehicle_id = Column(Integer, ForeignKey('transport_vehicles.id'), nullable=True)
    assigned_driver_id = Column(Integer, ForeignKey('transport_drivers.id'), nullable=True)

    # Canonical timing
    pickup_time = Column(Time, nullable=True)  # Morning pickup start
    dropoff_time = Column(Time, nullable=True)  # Afternoon departure

    # Fee schedule
    base_fee = Column(Numeric(10, 2), default=Decimal('0.00'))
    distance_fee = Column(Numeric(10, 2), default=Decimal('0.00'))  # Per km
    special_needs_fee = Column(Numeric(10, 2), default=Decimal('0.00'))
    medical_fee = Column(Numeric(10, 2), nullable=True)  # NULL falls back to emergency_fee
    emergency_fee = Column(Numeric(10, 2), default=Decimal('0.00'))

    # Metadata
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    waypoints = relationship("RouteWaypoint", back_populates="route", cascade="all, delete-orphan",
                             order_by="RouteWaypoint.sequence")
    vehicle = relationship("TransportVehicle", foreign_keys=[assigned_vehicle_id], viewonly=True)
    driver = relationship("TransportDriver", foreign_keys=[assigned_driver_id], viewonly=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'route_code', name='uq_transport_route_tenant_code'),
        UniqueConstraint('assigned_vehicle_id', name='uq_transport_route_vehicle'),
        UniqueConstraint('assigned_driver_id', name='uq_transport_route_driver'),
        CheckConstraint('current_occupancy >= 0', name='ck_transport_route_occupancy_min'),
        CheckConstraint('current_occupancy <= capacity', name='ck_transport_route_occupancy_max'),
        Index('idx_transport_route_tenant', 'tenant_id'),
        Index('idx_transport_route_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f'<TransportRoute {self.route_name}>'

    @property
    def total_stops(self):
        return len(self.waypoints)

    @property
    def available_seats(self):
        return max((self.capacity or 0) - (self.current_occupancy or 0), 0)

    @property
    def is_operable(self):
        return self.status == RouteStatusEnum.ACTIVE

    def to_dict(self, include_waypoints=True):
        data = {
            'id': self.id,
            'route_code': self.route_code,
            'route_name': self.route_name,
            'description': self.description,
            'route_type': self.route_type.value if self.route_type else None,
            'status': self.status.value if self.status else None,
            'start_location': self.start_location,
            'end_location': self.end_location,
            'distance_km': self.distance_km,
            'estimated_duration_minutes': self.estimated_duration_minutes,
            'capacity': self.capacity,
            'current_occupancy': self.current_occupancy,
            'assigned_vehicle_id': self.assigned_vehicle_id,
            'assigned_driver_id': self.assigned_driver_id,
            'pickup_time': _iso(self.pickup_time),
            'dropoff_time': _iso(self.dropoff_time),
            'fees': {
                'base_fee': _money(self.base_fee),
                'distance_fee': _money(self.distance_fee),
                'special_needs_fee': _money(self.special_needs_fee),
                'medical_fee': _money(self.medical_fee),
                'emergency_fee': _money(self.emergency_fee),
            },
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_waypoints:
            data['waypoints'] = [w.to_dict() for w in self.waypoints]
        return data


class RouteWaypoint(Base):
    """Ordered stop references on a route with their arrival offsets"""
    __tablename__ = 'transport_route_waypoints'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    route_id = Column(Integer, ForeignKey('transport_routes.id'), nullable=False)
    stop_id = Column(Integer, ForeignKey('transport_stops.id'), nullable=True)

    sequence = Column(Integer, nullable=False)  # 1-based order on the route
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(255), nullable=True)
    estimated_students = Column(Integer, default=0)
    arrival_offset_minutes = Column(Integer, default=0)  # Minutes after route start

    route = relationship("TransportRoute", back_populates="waypoints")
    stop = relationship("TransportStop")

    __table_args__ = (
        UniqueConstraint('route_id', 'sequence', name='uq_transport_waypoint_route_sequence'),
        Index('idx_transport_waypoint_stop', 'stop_id'),
    )

    def __repr__(self):
        return f'<RouteWaypoint #{self.sequence} on Route#{self.route_id}>'

    def to_dict(self):
        return {
            'sequence': self.sequence,
            'stop_id': self.stop_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'address': self.address,
            'estimated_students': self.estimated_students,
            'arrival_offset_minutes': self.arrival_offset_minutes,
        }


class TransportVehicle(Base):
    """Transport vehicles/buses"""
    __tablename__ = 'transport_vehicles'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Vehicle Information
    vehicle_code = Column(String(20), nullable=False)
    registration_number = Column(String(20), nullable=False)
    vehicle_name = Column(String(100), nullable=False)
    vehicle_type = Column(_enum(VehicleTypeEnum), default=VehicleTypeEnum.BUS, nullable=False)
    model = Column(String(100), nullable=True)
    capacity = Column(Integer, default=40)  # Seating capacity
    fuel_type = Column(_enum(FuelTypeEnum), nullable=True)
    mileage = Column(Float, default=0.0)  # Odometer, km

    # Compliance
    next_service_date = Column(Date, nullable=True)
    insurance_expiry = Column(Date, nullable=True)

    # Status
    status = Column(_enum(VehicleStatusEnum), default=VehicleStatusEnum.ACTIVE, nullable=False)
    assigned_route_id = Column(Integer, ForeignKey('transport_routes.id', use_alter=True,
                                                   name='fk_transport_vehicle_route'), nullable=True)

    # Metadata
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    maintenance_records = relationship("VehicleMaintenance", back_populates="vehicle",
                                       cascade="all, delete-orphan",
                                       order_by="VehicleMaintenance.scheduled_date")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'vehicle_code', name='uq_transport_vehicle_tenant_code'),
        UniqueConstraint('tenant_id', 'registration_number', name='uq_transport_vehicle_tenant_registration'),
        UniqueConstraint('assigned_route_id', name='uq_transport_vehicle_route'),
        Index('idx_transport_vehicle_tenant', 'tenant_id'),
        Index('idx_transport_vehicle_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f'<TransportVehicle {self.registration_number}>'

    def to_dict(self):
        return {
            'id': self.id,
            'vehicle_code': self.vehicle_code,
            'registration_number': self.registration_number,
            'vehicle_name': self.vehicle_name,
            'vehicle_type': self.vehicle_type.value if self.vehicle_type else None,
            'model': self.model,
            'capacity': self.capacity,
            'fuel_type': self.fuel_type.value if self.fuel_type else None,
            'mileage': self.mileage,
            'next_service_date': _iso(self.next_service_date),
            'insurance_expiry': _iso(self.insurance_expiry),
            'status': self.status.value if self.status else None,
            'assigned_route_id': self.assigned_route_id,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class VehicleMaintenance(Base):
    """Scheduled maintenance entries for a vehicle"""
    __tablename__ = 'transport_vehicle_maintenance'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    vehicle_id = Column(Integer, ForeignKey('transport_vehicles.id'), nullable=False)

    maintenance_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    estimated_cost = Column(Numeric(10, 2), default=Decimal('0.00'))
    scheduled_date = Column(Date, nullable=False)
    priority = Column(_enum(MaintenancePriorityEnum), default=MaintenancePriorityEnum.MEDIUM, nullable=False)
    mileage_at_schedule = Column(Float, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    vehicle = relationship("TransportVehicle", back_populates="maintenance_records")

    __table_args__ = (
        Index('idx_transport_maintenance_vehicle', 'tenant_id', 'vehicle_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'vehicle_id': self.vehicle_id,
            'maintenance_type': self.maintenance_type,
            'description': self.description,
            'estimated_cost': _money(self.estimated_cost),
            'scheduled_date': _iso(self.scheduled_date),
            'priority': self.priority.value if self.priority else None,
            'mileage_at_schedule': self.mileage_at_schedule,
            'created_at': _iso(self.created_at),
        }


class TransportDriver(Base):
    """Drivers who can be bound to a route"""
    __tablename__ = 'transport_drivers'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Driver Information
    driver_code = Column(String(20), nullable=False)
    first_name = Column(String(50), nullable=False)
    middle_name = Column(String(50), nullable=True)
    last_name = Column(String(50), nullable=False)
    full_name = Column(String(160), nullable=False)
    phone = Column(String(20), nullable=True)

    # License
    license_number = Column(String(50), nullable=False)
    license_type = Column(_enum(LicenseTypeEnum), default=LicenseTypeEnum.COMMERCIAL, nullable=False)
    license_expiry = Column(Date, nullable=True)

    # Medical
    last_medical_check = Column(Date, nullable=True)
    next_medical_check = Column(Date, nullable=True)
    fitness_to_drive = Column(Boolean, default=True)
    medical_restrictions = Column(Text, nullable=True)

    # Performance
    average_rating = Column(Float, default=0.0)
    safety_incidents = Column(Integer, default=0)

    # Status
    status = Column(_enum(DriverStatusEnum), default=DriverStatusEnum.ACTIVE, nullable=False)
    assigned_route_id = Column(Integer, ForeignKey('transport_routes.id', use_alter=True,
                                                   name='fk_transport_driver_route'), nullable=True)

    # Metadata
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    training_records = relationship("DriverTraining", back_populates="driver",
                                    cascade="all, delete-orphan",
                                    order_by="DriverTraining.training_date, DriverTraining.id")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'driver_code', name='uq_transport_driver_tenant_code'),
        UniqueConstraint('tenant_id', 'license_number', name='uq_transport_driver_tenant_license'),
        UniqueConstraint('assigned_route_id', name='uq_transport_driver_route'),
        Index('idx_transport_driver_tenant', 'tenant_id'),
        Index('idx_transport_driver_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f'<TransportDriver {self.full_name}>'

    def to_dict(self):
        return {
            'id': self.id,
            'driver_code': self.driver_code,
            'first_name': self.first_name,
            'middle_name': self.middle_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'phone': self.phone,
            'license_number': self.license_number,
            'license_type': self.license_type.value if self.license_type else None,
            'license_expiry': _iso(self.license_expiry),
            'last_medical_check': _iso(self.last_medical_check),
            'next_medical_check': _iso(self.next_medical_check),
            'fitness_to_drive': self.fitness_to_drive,
            'average_rating': self.average_rating,
            'safety_incidents': self.safety_incidents,
            'status': self.status.value if self.status else None,
            'assigned_route_id': self.assigned_route_id,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class DriverTraining(Base):
    """Training courses attended by a driver; entries are only ever added"""
    __tablename__ = 'transport_driver_training'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    driver_id = Column(Integer, ForeignKey('transport_drivers.id'), nullable=False)

    training_name = Column(String(150), nullable=False)
    training_date = Column(Date, nullable=False)
    completion_date = Column(Date, nullable=True)
    trainer = Column(String(100), nullable=False)
    status = Column(_enum(TrainingStatusEnum), default=TrainingStatusEnum.IN_PROGRESS, nullable=False)
    score = Column(Float, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    driver = relationship("TransportDriver", back_populates="training_records")

    __table_args__ = (
        Index('idx_transport_training_driver', 'tenant_id', 'driver_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'driver_id': self.driver_id,
            'training_name': self.training_name,
            'training_date': _iso(self.training_date),
            'completion_date': _iso(self.completion_date),
            'trainer': self.trainer,
            'status': self.status.value if self.status else None,
            'score': self.score,
            'created_at': _iso(self.created_at),
        }


class StudentTransport(Base):
    """Student transport assignments - binds a student to a route and a pickup/dropoff stop pair"""
    __tablename__ = 'student_transports'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    student_id = Column(Integer, nullable=False)  # Owned by the student registry
    route_id = Column(Integer, ForeignKey('transport_routes.id'), nullable=False)
    pickup_stop_id = Column(Integer, ForeignKey('transport_stops.id'), nullable=False)
    dropoff_stop_id = Column(Integer, ForeignKey('transport_stops.id'), nullable=False)

    transport_type = Column(_enum(TransportTypeEnum), default=TransportTypeEnum.REGULAR, nullable=False)
    status = Column(_enum(TransportStatusEnum), default=TransportStatusEnum.ACTIVE, nullable=False)
    # 1 while active, NULL otherwise; backs the one-active-binding-per-student constraint
    active_marker = Column(Integer, nullable=True)
    frequency = Column(_enum(TransportFrequencyEnum), default=TransportFrequencyEnum.DAILY, nullable=False)

    # Validity
    start_date = Column(Date, default=date.today, nullable=False)
    end_date = Column(Date, nullable=True)  # NULL means ongoing

    # Times copied from the route when bound
    pickup_time = Column(Time, nullable=True)
    dropoff_time = Column(Time, nullable=True)

    # Fees
    transport_fee = Column(Numeric(10, 2), default=Decimal('0.00'))
    final_fee = Column(Numeric(10, 2), default=Decimal('0.00'))

    special_requirements = Column(Text, nullable=True)
    needs_reassignment = Column(Boolean, default=False, nullable=False)

    # Rolling performance summary folded from trip_activities
    total_trips = Column(Integer, default=0, nullable=False)
    completed_trips = Column(Integer, default=0, nullable=False)
    missed_trips = Column(Integer, default=0, nullable=False)
    delayed_trips = Column(Integer, default=0, nullable=False)
    cancelled_trips = Column(Integer, default=0, nullable=False)
    average_delay_minutes = Column(Float, default=0.0, nullable=False)
    on_time_rate = Column(Float, default=0.0, nullable=False)

    version = Column(Integer, nullable=False)

    # Metadata
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    route = relationship("TransportRoute")
    pickup_stop = relationship("TransportStop", foreign_keys=[pickup_stop_id])
    dropoff_stop = relationship("TransportStop", foreign_keys=[dropoff_stop_id])
    activities = relationship("TripActivity", back_populates="transport",
                              order_by="TripActivity.sequence")

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        UniqueConstraint('tenant_id', 'student_id', 'active_marker', name='uq_student_transport_one_active'),
        Index('idx_student_transport_tenant', 'tenant_id'),
        Index('idx_student_transport_student', 'tenant_id', 'student_id'),
        Index('idx_student_transport_route', 'tenant_id', 'route_id', 'status'),
    )

    @validates('status')
    def _sync_active_marker(self, key, status):
        self.active_marker = 1 if status == TransportStatusEnum.ACTIVE else None
        return status

    def __repr__(self):
        return f'<StudentTransport Student#{self.student_id} on Route#{self.route_id}>'

    @property
    def is_active(self):
        return self.status == TransportStatusEnum.ACTIVE

    def covers(self, on_date):
        """True when on_date falls inside the validity window"""
        if self.start_date and on_date < self.start_date:
            return False
        return self.end_date is None or on_date <= self.end_date

    def to_dict(self, include_history=False):
        data = {
            'id': self.id,
            'student_id': self.student_id,
            'route_id': self.route_id,
            'pickup_stop_id': self.pickup_stop_id,
            'dropoff_stop_id': self.dropoff_stop_id,
            'transport_type': self.transport_type.value if self.transport_type else None,
            'status': self.status.value if self.status else None,
            'frequency': self.frequency.value if self.frequency else None,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'pickup_time': _iso(self.pickup_time),
            'dropoff_time': _iso(self.dropoff_time),
            'transport_fee': _money(self.transport_fee),
            'final_fee': _money(self.final_fee),
            'special_requirements': self.special_requirements,
            'needs_reassignment': self.needs_reassignment,
            'performance_metrics': {
                'total_trips': self.total_trips,
                'completed_trips': self.completed_trips,
                'missed_trips': self.missed_trips,
                'delayed_trips': self.delayed_trips,
                'cancelled_trips': self.cancelled_trips,
                'average_delay_minutes': self.average_delay_minutes,
                'on_time_rate': self.on_time_rate,
            },
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_history:
            data['history'] = [a.to_dict() for a in self.activities]
        return data


class TripActivity(Base):
    """One realized pickup/dropoff event; rows are append-only"""
    __tablename__ = 'trip_activities'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    transport_id = Column(Integer, ForeignKey('student_transports.id'), nullable=False)
    sequence = Column(Integer, nullable=False)  # 1-based position in the binding's log

    trip_date = Column(Date, nullable=False)
    planned_pickup_time = Column(Time, nullable=True)
    actual_pickup_time = Column(Time, nullable=True)
    planned_dropoff_time = Column(Time, nullable=True)
    actual_dropoff_time = Column(Time, nullable=True)
    status = Column(_enum(TripStatusEnum), nullable=False)
    delay_minutes = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    is_terminal = Column(Boolean, default=False, nullable=False)  # Written by cancellation

    # Who was operating the route when the trip happened
    route_id = Column(Integer, nullable=True)
    vehicle_id = Column(Integer, nullable=True)
    driver_id = Column(Integer, nullable=True)

    recorded_by = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow)

    transport = relationship("StudentTransport", back_populates="activities")

    __table_args__ = (
        UniqueConstraint('transport_id', 'sequence', name='uq_trip_activity_transport_sequence'),
        Index('idx_trip_activity_tenant', 'tenant_id'),
        Index('idx_trip_activity_driver', 'tenant_id', 'driver_id'),
        Index('idx_trip_activity_route', 'tenant_id', 'route_id'),
    )

    def __repr__(self):
        return f'<TripActivity #{self.sequence} {self.status.value if self.status else None} on Transport#{self.transport_id}>'

    def to_dict(self):
        return {
            'sequence': self.sequence,
            'trip_date': _iso(self.trip_date),
            'planned_pickup_time': _iso(self.planned_pickup_time),
            'actual_pickup_time': _iso(self.actual_pickup_time),
            'planned_dropoff_time': _iso(self.planned_dropoff_time),
            'actual_dropoff_time': _iso(self.actual_dropoff_time),
            'status': self.status.value if self.status else None,
            'delay_minutes': self.delay_minutes,
            'notes': self.notes,
            'is_terminal': self.is_terminal,
            'route_id': self.route_id,
            'vehicle_id': self.vehicle_id,
            'driver_id': self.driver_id,
            'recorded_at': _iso(self.recorded_at),
        }


class TripActivityImmutable(Exception):
    """Raised when something tries to rewrite the trip log"""


@event.listens_for(TripActivity, 'before_update')
def _refuse_trip_update(mapper, connection, target):
    raise TripActivityImmutable(f"Trip activity #{target.sequence} of transport {target.transport_id} is immutable")


@event.listens_for(TripActivity, 'before_delete')
def _refuse_trip_delete(mapper, connection, target):
    raise TripActivityImmutable(f"Trip activity #{target.sequence} of transport {target.transport_id} cannot be deleted")
