"""
Transport Management Routes
JSON endpoints for stops, routes, vehicles, drivers, student transport,
schedules and analytics, mounted under /<tenant_slug>/transport/api
"""

from flask import request, jsonify, g
from flask_login import current_user
import logging

from db_single import get_session
from transport_errors import TransportError, MissingField, InvalidValue
from transport_validators import TransportValidator as V
import stop_helpers
import route_helpers
import vehicle_helpers
import driver_helpers
import assignment_helpers
import student_transport_helpers
import schedule_helpers
import transport_analytics_helpers

logger = logging.getLogger(__name__)

API = '/<tenant_slug>/transport/api'


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidValue("request body must be a JSON object", field='body')
    return data


def _actor_id():
    return getattr(current_user, 'id', None)


def _ok(data, status=200):
    return jsonify({'success': True, 'data': data}), status


def create_transport_routes(school_blueprint, require_school_auth):
    """Add transport management routes to school blueprint"""

    @school_blueprint.errorhandler(TransportError)
    def transport_error(error):
        level = logging.INFO if error.status_code == 404 else logging.WARNING
        logger.log(level, f"{request.method} {request.path} -> {error.status_code} {error.code}: {error}")
        return jsonify({'success': False, **error.to_dict()}), error.status_code

    # ===== STOPS =====
    @school_blueprint.route(f'{API}/stops', methods=['GET', 'POST'])
    @require_school_auth
    def transport_stops(tenant_slug):
        """List or create stops"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                stop = stop_helpers.create_stop(session, tenant_id, _payload(), _actor_id())
                return _ok(stop.to_dict(), 201)

            stops = stop_helpers.list_stops(session, tenant_id,
                                            status=request.args.get('status'),
                                            stop_type=request.args.get('type'),
                                            search=request.args.get('search'))
            return _ok([s.to_dict() for s in stops])
        finally:
            session.close()

    @school_blueprint.route(f'{API}/stops/<int:stop_id>', methods=['GET', 'PUT', 'DELETE'])
    @require_school_auth
    def transport_stop_detail(tenant_slug, stop_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'PUT':
                stop = stop_helpers.update_stop(session, tenant_id, stop_id, _payload(), _actor_id())
            elif request.method == 'DELETE':
                stop_helpers.delete_stop(session, tenant_id, stop_id)
                return _ok({'id': stop_id, 'deleted': True})
            else:
                stop = stop_helpers.get_stop(session, tenant_id, stop_id)
            data = stop.to_dict()
            data['references'] = stop_helpers.stop_references(session, tenant_id, stop_id)
            return _ok(data)
        finally:
            session.close()

    @school_blueprint.route(f'{API}/stops/<int:stop_id>/retire', methods=['POST'])
    @require_school_auth
    def transport_stop_retire(tenant_slug, stop_id):
        session = get_session()
        try:
            stop = stop_helpers.retire_stop(session, g.current_tenant.id, stop_id, _actor_id())
            return _ok(stop.to_dict())
        finally:
            session.close()

    # ===== ROUTES =====
    @school_blueprint.route(f'{API}/routes', methods=['GET', 'POST'])
    @require_school_auth
    def transport_routes_list(tenant_slug):
        """List or create routes"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                route = route_helpers.create_route(session, tenant_id, _payload(), _actor_id())
                return _ok(route.to_dict(), 201)

            routes = route_helpers.list_routes(session, tenant_id,
                                               status=request.args.get('status'),
                                               route_type=request.args.get('type'),
                                               vehicle_id=request.args.get('vehicle_id', type=int),
                                               driver_id=request.args.get('driver_id', type=int),
                                               search=request.args.get('search'))
            return _ok([r.to_dict(include_waypoints=False) for r in routes])
        finally:
            session.close()

    @school_blueprint.route(f'{API}/routes/optimize', methods=['POST'])
    @require_school_auth
    def transport_route_optimize(tenant_slug):
        """Build a route from an ordered list of stops"""
        session = get_session()
        try:
            data = _payload()
            route = route_helpers.optimize_route(session, g.current_tenant.id, data.get('stops'),
                                                 data.get('constraints'), _actor_id())
            return _ok(route.to_dict(), 201)
        finally:
            session.close()

    @school_blueprint.route(f'{API}/routes/<int:route_id>', methods=['GET', 'PUT', 'DELETE'])
    @require_school_auth
    def transport_route_detail(tenant_slug, route_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'PUT':
                route = route_helpers.update_route(session, tenant_id, route_id, _payload(), _actor_id())
            elif request.method == 'DELETE':
                route_helpers.delete_route(session, tenant_id, route_id)
                return _ok({'id': route_id, 'deleted': True})
            else:
                route = route_helpers.get_route(session, tenant_id, route_id)
            return _ok(route.to_dict())
        finally:
            session.close()

    @school_blueprint.route(f'{API}/routes/<int:route_id>/status', methods=['POST'])
    @require_school_auth
    def transport_route_status(tenant_slug, route_id):
        session = get_session()
        try:
            status = _payload().get('status')
            if not status:
                raise MissingField('status')
            route = route_helpers.set_route_status(session, g.current_tenant.id, route_id, status, _actor_id())
            return _ok(route.to_dict(include_waypoints=False))
        finally:
            session.close()

    @school_blueprint.route(f'{API}/routes/<int:route_id>/assign', methods=['POST'])
    @require_school_auth
    def transport_route_assign(tenant_slug, route_id):
        """Bind a vehicle and/or driver to a route"""
        session = get_session()
        try:
            data = _payload()
            route = assignment_helpers.assign_vehicle_and_driver(
                session, g.current_tenant.id, route_id,
                vehicle_id=V.int_value(data.get('vehicle_id'), 'vehicle_id'),
                driver_id=V.int_value(data.get('driver_id'), 'driver_id'),
                actor_id=_actor_id()
            )
            return _ok(route.to_dict(include_waypoints=False))
        finally:
            session.close()

    @school_blueprint.route(f'{API}/routes/<int:route_id>/unassign', methods=['POST'])
    @require_school_auth
    def transport_route_unassign(tenant_slug, route_id):
        session = get_session()
        try:
            data = _payload()
            result = assignment_helpers.unassign_resources(
                session, g.current_tenant.id, route_id,
                vehicle=V.bool_value(data.get('vehicle'), default=True),
                driver=V.bool_value(data.get('driver'), default=True),
                override=V.bool_value(data.get('override'), default=False),
                actor_id=_actor_id()
            )
            return _ok({'route': result['route'].to_dict(include_waypoints=False),
                        'flagged_transport_ids': result['flagged_transport_ids']})
        finally:
            session.close()

    # ===== VEHICLES =====
    @school_blueprint.route(f'{API}/vehicles', methods=['GET', 'POST'])
    @require_school_auth
    def transport_vehicles_list(tenant_slug):
        """List or register vehicles"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                vehicle = vehicle_helpers.create_vehicle(session, tenant_id, _payload(), _actor_id())
                return _ok(vehicle.to_dict(), 201)

            vehicles = vehicle_helpers.list_vehicles(session, tenant_id,
                                                     status=request.args.get('status'),
                                                     vehicle_type=request.args.get('type'),
                                                     search=request.args.get('search'))
            return _ok([v.to_dict() for v in vehicles])
        finally:
            session.close()

    @school_blueprint.route(f'{API}/vehicles/<int:vehicle_id>', methods=['GET', 'PUT', 'DELETE'])
    @require_school_auth
    def transport_vehicle_detail(tenant_slug, vehicle_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'PUT':
                vehicle = vehicle_helpers.update_vehicle(session, tenant_id, vehicle_id, _payload(), _actor_id())
            elif request.method == 'DELETE':
                vehicle_helpers.delete_vehicle(session, tenant_id, vehicle_id)
                return _ok({'id': vehicle_id, 'deleted': True})
            else:
                vehicle = vehicle_helpers.get_vehicle(session, tenant_id, vehicle_id)
            return _ok(vehicle.to_dict())
        finally:
            session.close()

    @school_blueprint.route(f'{API}/vehicles/<int:vehicle_id>/maintenance', methods=['GET', 'POST'])
    @require_school_auth
    def transport_vehicle_maintenance(tenant_slug, vehicle_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                record = vehicle_helpers.schedule_maintenance(session, tenant_id, vehicle_id,
                                                              _payload(), _actor_id())
                return _ok(record.to_dict(), 201)

            vehicle = vehicle_helpers.get_vehicle(session, tenant_id, vehicle_id)
            return _ok([r.to_dict() for r in vehicle.maintenance_records])
        finally:
            session.close()

    # ===== DRIVERS =====
    @school_blueprint.route(f'{API}/drivers', methods=['GET', 'POST'])
    @require_school_auth
    def transport_drivers_list(tenant_slug):
        """List or register drivers"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                driver = driver_helpers.create_driver(session, tenant_id, _payload(), _actor_id())
                return _ok(driver.to_dict(), 201)

            drivers = driver_helpers.list_drivers(session, tenant_id,
                                                  status=request.args.get('status'),
                                                  license_type=request.args.get('type'),
                                                  search=request.args.get('search'))
            return _ok([d.to_dict() for d in drivers])
        finally:
            session.close()

    @school_blueprint.route(f'{API}/drivers/<int:driver_id>', methods=['GET', 'PUT', 'DELETE'])
    @require_school_auth
    def transport_driver_detail(tenant_slug, driver_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'PUT':
                driver = driver_helpers.update_driver(session, tenant_id, driver_id, _payload(), _actor_id())
            elif request.method == 'DELETE':
                driver_helpers.delete_driver(session, tenant_id, driver_id)
                return _ok({'id': driver_id, 'deleted': True})
            else:
                driver = driver_helpers.get_driver(session, tenant_id, driver_id)
            return _ok(driver.to_dict())
        finally:
            session.close()

    @school_blueprint.route(f'{API}/drivers/<int:driver_id>/medical-check', methods=['POST'])
    @require_school_auth
    def transport_driver_medical_check(tenant_slug, driver_id):
        session = get_session()
        try:
            driver = driver_helpers.update_medical_check(session, g.current_tenant.id, driver_id,
                                                         _payload(), _actor_id())
            return _ok(driver.to_dict())
        finally:
            session.close()

    @school_blueprint.route(f'{API}/drivers/<int:driver_id>/training', methods=['GET', 'POST'])
    @require_school_auth
    def transport_driver_training(tenant_slug, driver_id):
        """List or add driver training records"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                record = driver_helpers.add_training_record(session, tenant_id, driver_id,
                                                            _payload(), _actor_id())
                return _ok(record.to_dict(), 201)
            records = driver_helpers.list_training_records(session, tenant_id, driver_id)
            return _ok([r.to_dict() for r in records])
        finally:
            session.close()

    # ===== STUDENT TRANSPORT =====
    @school_blueprint.route(f'{API}/students', methods=['GET', 'POST'])
    @require_school_auth
    def transport_assignments_list(tenant_slug):
        """List or create student transport assignments"""
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'POST':
                binding = student_transport_helpers.assign_transport(session, tenant_id, _payload(), _actor_id())
                return _ok(binding.to_dict(), 201)

            needs_reassignment = request.args.get('needs_reassignment')
            bindings = student_transport_helpers.list_transports(
                session, tenant_id,
                student_id=request.args.get('student_id', type=int),
                status=request.args.get('status'),
                transport_type=request.args.get('type'),
                route_id=request.args.get('route_id', type=int),
                stop_id=request.args.get('stop_id', type=int),
                needs_reassignment=V.bool_value(needs_reassignment) if needs_reassignment else None
            )
            return _ok([b.to_dict() for b in bindings])
        finally:
            session.close()

    @school_blueprint.route(f'{API}/students/<int:transport_id>', methods=['GET', 'PUT'])
    @require_school_auth
    def transport_assignment_detail(tenant_slug, transport_id):
        session = get_session()
        try:
            tenant_id = g.current_tenant.id
            if request.method == 'PUT':
                binding = student_transport_helpers.update_transport(session, tenant_id, transport_id,
                                                                     _payload(), _actor_id())
            else:
                binding = student_transport_helpers.get_transport(session, tenant_id, transport_id)
            include_history = V.bool_value(request.args.get('history'), default=False)
            return _ok(binding.to_dict(include_history=include_history))
        finally:
            session.close()

    @school_blueprint.route(f'{API}/students/<int:transport_id>/cancel', methods=['POST'])
    @require_school_auth
    def transport_assignment_cancel(tenant_slug, transport_id):
        session = get_session()
        try:
            binding = student_transport_helpers.cancel_transport(session, g.current_tenant.id, transport_id,
                                                                 _payload().get('reason'), _actor_id())
            return _ok(binding.to_dict(include_history=True))
        finally:
            session.close()

    @school_blueprint.route(f'{API}/students/<int:transport_id>/resync', methods=['POST'])
    @require_school_auth
    def transport_assignment_resync(tenant_slug, transport_id):
        session = get_session()
        try:
            binding = student_transport_helpers.resync_transport_times(session, g.current_tenant.id,
                                                                       transport_id, _actor_id())
            return _ok(binding.to_dict())
        finally:
            session.close()

    @school_blueprint.route(f'{API}/students/<int:transport_id>/activity', methods=['POST'])
    @require_school_auth
    def transport_assignment_activity(tenant_slug, transport_id):
        """Record a realized trip"""
        session = get_session()
        try:
            data = _payload()
            binding = transport_analytics_helpers.record_activity(
                session, g.current_tenant.id, transport_id, data.get('status'),
                planned_pickup=data.get('planned_pickup'),
                actual_pickup=data.get('actual_pickup'),
                planned_dropoff=data.get('planned_dropoff'),
                actual_dropoff=data.get('actual_dropoff'),
                delay_minutes=data.get('delay_minutes'),
                notes=data.get('notes'),
                trip_date=data.get('trip_date'),
                actor_id=_actor_id()
            )
            return _ok(binding.to_dict(include_history=True), 201)
        finally:
            session.close()

    # ===== SCHEDULE =====
    @school_blueprint.route(f'{API}/schedule')
    @require_school_auth
    def transport_schedule(tenant_slug):
        session = get_session()
        try:
            schedule = schedule_helpers.get_schedule(session, g.current_tenant.id,
                                                     request.args.get('date'),
                                                     request.args.get('route_id', type=int))
            return _ok(schedule)
        finally:
            session.close()

    @school_blueprint.route(f'{API}/schedule/report')
    @require_school_auth
    def transport_schedule_report(tenant_slug):
        session = get_session()
        try:
            report = schedule_helpers.get_daily_report(session, g.current_tenant.id,
                                                       request.args.get('date'),
                                                       request.args.get('route_id', type=int))
            return _ok(report)
        finally:
            session.close()

    # ===== ANALYTICS =====
    @school_blueprint.route(f'{API}/analytics/<scope>')
    @school_blueprint.route(f'{API}/analytics/<scope>/<int:entity_id>')
    @require_school_auth
    def transport_analytics(tenant_slug, scope, entity_id=None):
        session = get_session()
        try:
            data = transport_analytics_helpers.get_analytics(session, g.current_tenant.id, scope, entity_id)
            return _ok(data)
        finally:
            session.close()
