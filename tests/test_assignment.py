"""
Tests for binding vehicles and drivers to routes
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from assignment_helpers import assign_vehicle_and_driver, unassign_resources
from route_helpers import get_route, set_route_status
from vehicle_helpers import get_vehicle, update_vehicle, create_vehicle
from driver_helpers import get_driver, update_driver
from student_transport_helpers import assign_transport, get_transport
from transport_errors import (
    MissingField, ResourceNotActive, ResourceAlreadyAssigned, ResourceNotFound, ActiveBindingsOnRoute
)


class TestAssign:

    def test_binds_both_sides(self, session, tenant, route, vehicle, driver):
        route = assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id,
                                          driver_id=driver.id)
        assert route.assigned_vehicle_id == vehicle.id
        assert route.assigned_driver_id == driver.id
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id == route.id
        assert get_driver(session, tenant.id, driver.id).assigned_route_id == route.id

    def test_needs_a_resource(self, session, tenant, route):
        with pytest.raises(MissingField):
            assign_vehicle_and_driver(session, tenant.id, route.id)

    def test_unknown_vehicle(self, session, tenant, route):
        with pytest.raises(ResourceNotFound):
            assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=999)

    def test_inactive_vehicle_refused(self, session, tenant, route, vehicle):
        update_vehicle(session, tenant.id, vehicle.id, {'status': 'maintenance'})
        with pytest.raises(ResourceNotActive):
            assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)

    def test_suspended_driver_refused(self, session, tenant, route, driver):
        update_driver(session, tenant.id, driver.id, {'status': 'suspended'})
        with pytest.raises(ResourceNotActive):
            assign_vehicle_and_driver(session, tenant.id, route.id, driver_id=driver.id)

    def test_vehicle_on_active_route_refused(self, session, tenant, route, make_route, vehicle):
        other = make_route(route_code='R2')
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)

        with pytest.raises(ResourceAlreadyAssigned) as exc:
            assign_vehicle_and_driver(session, tenant.id, other.id, vehicle_id=vehicle.id)
        assert exc.value.context['assigned_route_id'] == route.id
        assert get_route(session, tenant.id, other.id).assigned_vehicle_id is None

    def test_failed_pair_binds_nothing(self, session, tenant, route, make_route, vehicle, driver):
        other = make_route(route_code='R2')
        assign_vehicle_and_driver(session, tenant.id, route.id, driver_id=driver.id)

        with pytest.raises(ResourceAlreadyAssigned):
            assign_vehicle_and_driver(session, tenant.id, other.id, vehicle_id=vehicle.id, driver_id=driver.id)
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id is None
        assert get_route(session, tenant.id, other.id).assigned_vehicle_id is None

    def test_vehicle_moves_off_inactive_route(self, session, tenant, route, make_route, vehicle):
        other = make_route(route_code='R2')
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        set_route_status(session, tenant.id, route.id, 'inactive')

        assign_vehicle_and_driver(session, tenant.id, other.id, vehicle_id=vehicle.id)
        assert get_route(session, tenant.id, route.id).assigned_vehicle_id is None
        assert get_route(session, tenant.id, other.id).assigned_vehicle_id == vehicle.id
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id == other.id

    def test_replacing_vehicle_releases_previous(self, session, tenant, route, vehicle):
        spare = create_vehicle(session, tenant.id, {'vehicle_code': 'V2', 'registration_number': 'REG-2',
                                                    'vehicle_name': 'Spare'})
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=spare.id)

        assert get_route(session, tenant.id, route.id).assigned_vehicle_id == spare.id
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id is None

    def test_reassigning_same_vehicle_is_idempotent(self, session, tenant, route, vehicle):
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        route = assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        assert route.assigned_vehicle_id == vehicle.id

    def test_concurrent_assignment_of_one_vehicle(self, session, new_session, tenant, make_route, vehicle):
        route_ids = [make_route(route_code=f'C{i}').id for i in range(6)]
        tenant_id, vehicle_id = tenant.id, vehicle.id
        session.close()

        def attempt(route_id):
            s = new_session()
            try:
                assign_vehicle_and_driver(s, tenant_id, route_id, vehicle_id=vehicle_id)
                return 'ok'
            except ResourceAlreadyAssigned:
                return 'taken'
            finally:
                s.close()

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, route_ids))

        assert results.count('ok') == 1
        assert results.count('taken') == 5

        check = new_session()
        holders = [get_route(check, tenant_id, rid).assigned_vehicle_id for rid in route_ids]
        winner = route_ids[results.index('ok')]
        assert holders.count(vehicle_id) == 1
        assert get_vehicle(check, tenant_id, vehicle_id).assigned_route_id == winner

    def test_concurrent_assignment_of_one_driver(self, session, new_session, tenant, make_route, driver):
        route_ids = [make_route(route_code=f'D{i}').id for i in range(6)]
        tenant_id, driver_id = tenant.id, driver.id
        session.close()

        def attempt(route_id):
            s = new_session()
            try:
                assign_vehicle_and_driver(s, tenant_id, route_id, driver_id=driver_id)
                return 'ok'
            except ResourceAlreadyAssigned:
                return 'taken'
            finally:
                s.close()

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, route_ids))

        assert results.count('ok') == 1
        assert results.count('taken') == 5

        check = new_session()
        holders = [get_route(check, tenant_id, rid).assigned_driver_id for rid in route_ids]
        winner = route_ids[results.index('ok')]
        assert holders.count(driver_id) == 1
        assert get_driver(check, tenant_id, driver_id).assigned_route_id == winner


class TestUnassign:

    def test_clears_both_sides(self, session, tenant, route, vehicle, driver):
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id, driver_id=driver.id)
        result = unassign_resources(session, tenant.id, route.id, driver=False)

        assert result['route'].assigned_vehicle_id is None
        assert result['route'].assigned_driver_id == driver.id
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id is None

    def test_refused_with_active_students(self, session, tenant, route, vehicle, stops):
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        assign_transport(session, tenant.id, {'student_id': 7, 'route_id': route.id,
                                              'pickup_stop_id': stops[0].id, 'dropoff_stop_id': stops[1].id})

        with pytest.raises(ActiveBindingsOnRoute):
            unassign_resources(session, tenant.id, route.id)
        assert get_route(session, tenant.id, route.id).assigned_vehicle_id == vehicle.id

    def test_override_flags_students(self, session, tenant, route, vehicle, stops):
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        binding = assign_transport(session, tenant.id, {'student_id': 7, 'route_id': route.id,
                                                        'pickup_stop_id': stops[0].id,
                                                        'dropoff_stop_id': stops[1].id})

        result = unassign_resources(session, tenant.id, route.id, override=True)
        assert result['flagged_transport_ids'] == [binding.id]
        assert get_transport(session, tenant.id, binding.id).needs_reassignment is True
        assert get_vehicle(session, tenant.id, vehicle.id).assigned_route_id is None
