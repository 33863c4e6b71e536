"""
Resource Assignment Helper Functions
Binds vehicles and drivers to routes while keeping each resource on at most
one route. The pre-checks below fail fast; the unique constraints on both
sides of the binding are what actually stop concurrent double-binds.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from transport_models import (
    TransportRoute, TransportVehicle, TransportDriver, StudentTransport,
    RouteStatusEnum, VehicleStatusEnum, DriverStatusEnum, TransportStatusEnum
)
from transport_errors import (
    MissingField, ResourceNotActive, ResourceAlreadyAssigned, ActiveBindingsOnRoute,
    ConcurrentModification
)
from route_helpers import get_route
from vehicle_helpers import get_vehicle
from driver_helpers import get_driver

logger = logging.getLogger(__name__)

RESOURCES = {
    'vehicle': (TransportVehicle, 'assigned_vehicle_id', VehicleStatusEnum.ACTIVE),
    'driver': (TransportDriver, 'assigned_driver_id', DriverStatusEnum.ACTIVE),
}


def _load_resource(session: Session, tenant_id: int, kind: str, resource_id: int):
    resource = get_vehicle(session, tenant_id, resource_id) if kind == 'vehicle' \
        else get_driver(session, tenant_id, resource_id)
    _, _, active_status = RESOURCES[kind]
    if resource.status != active_status:
        logger.warning(f"{kind.capitalize()} {resource_id} is {resource.status.value}, cannot assign")
        raise ResourceNotActive(kind, resource_id, resource.status.value)
    return resource


def _release(session: Session, tenant_id: int, kind: str, resource, route: TransportRoute = None):
    """Clear a resource's binding on both sides"""
    _, route_column, _ = RESOURCES[kind]
    route = route or session.query(TransportRoute).filter_by(
        id=resource.assigned_route_id, tenant_id=tenant_id
    ).first()
    if route is not None and getattr(route, route_column) == resource.id:
        setattr(route, route_column, None)
    logger.info(f"Released {kind} {resource.id} from route {resource.assigned_route_id}")
    resource.assigned_route_id = None


def _current_holder(session: Session, tenant_id: int, kind: str, resource_id: int):
    """Route id now holding a resource, read from either side of the binding"""
    model, route_column, _ = RESOURCES[kind]
    route = session.query(TransportRoute).filter(
        TransportRoute.tenant_id == tenant_id,
        getattr(TransportRoute, route_column) == resource_id
    ).first()
    if route:
        return route.id
    resource = session.query(model).filter_by(id=resource_id, tenant_id=tenant_id).first()
    return resource.assigned_route_id if resource else None


def _raise_assignment_conflict(session: Session, tenant_id: int, route_id: int, requested: dict):
    """Work out which requested resource a concurrent writer took"""
    for kind, resource_id in requested.items():
        holder = _current_holder(session, tenant_id, kind, resource_id)
        if holder and holder != route_id:
            raise ResourceAlreadyAssigned(kind, resource_id, route_id=holder)
    raise ConcurrentModification("Route assignment changed while it was being updated; retry",
                                 route_id=route_id)


# ===== ASSIGN =====

def assign_vehicle_and_driver(session: Session, tenant_id: int, route_id: int, vehicle_id: int = None,
                              driver_id: int = None, actor_id: int = None) -> TransportRoute:
    """
    Bind a vehicle and/or a driver to a route.

    Both requested bindings are applied in one transaction or neither is.
    A resource still attached to a route that is no longer active is moved;
    one attached to a different active route is refused.

    Raises:
        MissingField, RouteNotFound, ResourceNotFound, ResourceNotActive,
        ResourceAlreadyAssigned
    """
    requested = {kind: rid for kind, rid in (('vehicle', vehicle_id), ('driver', driver_id)) if rid}
    if not requested:
        raise MissingField('vehicle_id', "vehicle_id or driver_id is required")

    route = get_route(session, tenant_id, route_id)
    resources = {kind: _load_resource(session, tenant_id, kind, rid) for kind, rid in requested.items()}

    try:
        # Pass 1: exclusivity checks and releases
        for kind, resource in resources.items():
            model, route_column, _ = RESOURCES[kind]

            if resource.assigned_route_id and resource.assigned_route_id != route.id:
                other = session.query(TransportRoute).filter_by(
                    id=resource.assigned_route_id, tenant_id=tenant_id
                ).first()
                if other is not None and other.status == RouteStatusEnum.ACTIVE:
                    logger.warning(f"{kind.capitalize()} {resource.id} already serves active route {other.id}")
                    raise ResourceAlreadyAssigned(kind, resource.id, route_id=other.id)
                _release(session, tenant_id, kind, resource, other)

            previous_id = getattr(route, route_column)
            if previous_id and previous_id != resource.id:
                previous = session.query(model).filter_by(id=previous_id, tenant_id=tenant_id).first()
                if previous is not None:
                    _release(session, tenant_id, kind, previous, route)
                else:
                    setattr(route, route_column, None)

        # Releases hit the same unique columns the new bindings use
        session.flush()

        # Pass 2: bind both sides
        for kind, resource in resources.items():
            _, route_column, _ = RESOURCES[kind]
            setattr(route, route_column, resource.id)
            resource.assigned_route_id = route.id
            resource.updated_by = actor_id

        route.updated_by = actor_id
        session.commit()
    except ResourceAlreadyAssigned:
        session.rollback()
        raise
    except IntegrityError as e:
        session.rollback()
        logger.warning(f"Concurrent assignment on route {route_id} rejected: {e.orig}")
        _raise_assignment_conflict(session, tenant_id, route_id, requested)
    except StaleDataError:
        session.rollback()
        raise ConcurrentModification("Route assignment changed while it was being updated; retry",
                                     route_id=route_id)

    logger.info(f"Assigned {', '.join(f'{k} {v}' for k, v in requested.items())} "
                f"to route {route.id} (tenant {tenant_id})")
    return route


# ===== UNASSIGN =====

def unassign_resources(session: Session, tenant_id: int, route_id: int, vehicle: bool = True,
                       driver: bool = True, override: bool = False, actor_id: int = None) -> dict:
    """
    Clear the route's vehicle and/or driver binding in both directions.

    Refused while active student assignments ride the route unless override
    is set; with override those assignments are flagged for re-assignment.

    Returns:
        dict with the route and the ids of assignments flagged for re-assignment
    """
    route = get_route(session, tenant_id, route_id)

    active_bindings = session.query(StudentTransport).filter_by(
        tenant_id=tenant_id, route_id=route.id, status=TransportStatusEnum.ACTIVE
    ).all()
    if active_bindings and not override:
        logger.warning(f"Refused to unassign route {route_id}: {len(active_bindings)} active assignments")
        raise ActiveBindingsOnRoute(route.id, len(active_bindings))

    flagged = []
    try:
        for kind, wanted in (('vehicle', vehicle), ('driver', driver)):
            if not wanted:
                continue
            model, route_column, _ = RESOURCES[kind]
            resource_id = getattr(route, route_column)
            if not resource_id:
                continue
            resource = session.query(model).filter_by(id=resource_id, tenant_id=tenant_id).first()
            if resource is not None:
                _release(session, tenant_id, kind, resource, route)
                resource.updated_by = actor_id
            else:
                setattr(route, route_column, None)

        if override:
            for binding in active_bindings:
                binding.needs_reassignment = True
                binding.updated_by = actor_id
                flagged.append(binding.id)

        route.updated_by = actor_id
        session.commit()
    except StaleDataError:
        session.rollback()
        raise ConcurrentModification("A student assignment on this route changed concurrently; retry",
                                     route_id=route_id)

    if flagged:
        logger.warning(f"Route {route.id} unassigned with override; {len(flagged)} assignments need re-assignment")
    logger.info(f"Unassigned resources from route {route.id} (tenant {tenant_id})")
    return {'route': route, 'flagged_transport_ids': flagged}
