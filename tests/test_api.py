"""
Tests for the transport JSON API
"""
import pytest

from models import User
from route_helpers import create_route
from conftest import route_data

BASE = '/greenfield/transport/api'


@pytest.fixture
def other_client(app, session, other_tenant):
    outsider = User(tenant_id=other_tenant.id, username='outsider', role='transport_manager', is_active=True)
    session.add(outsider)
    session.commit()
    return app.test_client(user=outsider)


def _data(response):
    body = response.get_json()
    assert body['success'] is True, body
    return body['data']


class TestAuth:

    def test_healthz(self, app):
        assert app.test_client().get('/_healthz').get_json() == {'status': 'ok'}

    def test_login_required(self, app, tenant):
        response = app.test_client().get(f'{BASE}/routes')
        assert response.status_code == 401

    def test_unknown_school(self, client):
        response = client.get('/nowhere/transport/api/routes')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'TenantNotFound'

    def test_wrong_school(self, other_client, tenant):
        response = other_client.get(f'{BASE}/routes')
        assert response.status_code == 403


class TestRouteEndpoints:

    def test_create_and_fetch(self, client, user):
        response = client.post(f'{BASE}/routes', json={
            'route_code': 'R1', 'route_name': 'North Loop', 'start_location': 'Depot',
            'end_location': 'School', 'pickup_time': '07:30', 'fees': {'base_fee': 500}
        })
        assert response.status_code == 201
        created = _data(response)
        assert created['fees']['base_fee'] == '500.00'
        assert created['pickup_time'] == '07:30:00'

        fetched = _data(client.get(f"{BASE}/routes/{created['id']}"))
        assert fetched['route_code'] == 'R1'

    def test_validation_error_shape(self, client):
        response = client.post(f'{BASE}/routes', json={'route_name': 'No ends'})
        assert response.status_code == 400
        body = response.get_json()
        assert body['success'] is False
        assert body['error'] == 'MissingField'
        assert body['field'] == 'start_location'

    def test_duplicate_code_is_conflict(self, client, route):
        response = client.post(f'{BASE}/routes', json=route_data(pickup_time='07:30', dropoff_time='14:45'))
        assert response.status_code == 409
        assert response.get_json()['code'] == 'duplicate_route_code'

    def test_other_school_route_not_found(self, client, session, other_tenant):
        theirs = create_route(session, other_tenant.id, route_data())
        response = client.get(f'{BASE}/routes/{theirs.id}')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'RouteNotFound'

    def test_optimize(self, client, stops):
        response = client.post(f'{BASE}/routes/optimize', json={
            'stops': [{'stop_id': s.id} for s in stops],
            'constraints': {'route_name': 'Morning run'}
        })
        assert response.status_code == 201
        route = _data(response)
        assert route['route_name'] == 'Morning run'
        assert route['capacity'] == 35
        assert len(route['waypoints']) == 3

    def test_optimize_needs_two_stops(self, client):
        response = client.post(f'{BASE}/routes/optimize', json={'stops': [{'latitude': 1, 'longitude': 1}]})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'insufficient_stops'

    def test_optimize_stops_must_be_objects(self, client):
        response = client.post(f'{BASE}/routes/optimize', json={'stops': [1, 2]})
        assert response.status_code == 400
        body = response.get_json()
        assert body['error'] == 'InvalidValue'
        assert body['field'] == 'stops[0]'

    def test_optimize_constraints_must_be_an_object(self, client, stops):
        response = client.post(f'{BASE}/routes/optimize', json={'stops': [{'stop_id': s.id} for s in stops],
                                                                'constraints': 'fast'})
        assert response.status_code == 400
        assert response.get_json()['field'] == 'constraints'

    @pytest.mark.parametrize('speed, error', [('fast', 'InvalidValue'), (0, 'InvalidSpeed')])
    def test_bad_speed_is_validation_error(self, client, stops, speed, error):
        response = client.post(f'{BASE}/routes', json={
            'route_name': 'Stops', 'start_location': 'A', 'end_location': 'C',
            'waypoints': [{'stop_id': s.id} for s in stops], 'assumed_speed_kmh': speed,
        })
        assert response.status_code == 400
        body = response.get_json()
        assert body['error'] == error
        assert body['field'] == 'assumed_speed_kmh'

    def test_update_with_bad_speed_keeps_route(self, client, route):
        response = client.put(f'{BASE}/routes/{route.id}', json={'route_name': 'Renamed',
                                                                 'assumed_speed_kmh': 'fast'})
        assert response.status_code == 400
        assert _data(client.get(f'{BASE}/routes/{route.id}'))['route_name'] == 'North Loop'

    def test_assign_and_unassign(self, client, route, vehicle, driver):
        response = client.post(f'{BASE}/routes/{route.id}/assign',
                               json={'vehicle_id': vehicle.id, 'driver_id': driver.id})
        assert _data(response)['assigned_vehicle_id'] == vehicle.id

        response = client.post(f'{BASE}/routes/{route.id}/unassign', json={})
        result = _data(response)
        assert result['route']['assigned_vehicle_id'] is None
        assert result['flagged_transport_ids'] == []

    def test_delete_bound_route_is_precondition_failure(self, client, route, vehicle):
        client.post(f'{BASE}/routes/{route.id}/assign', json={'vehicle_id': vehicle.id})
        response = client.delete(f'{BASE}/routes/{route.id}')
        assert response.status_code == 422
        assert response.get_json()['code'] == 'route_in_use'


class TestStudentEndpoints:

    def _assign(self, client, route, stops, student_id=1, **extra):
        payload = {'student_id': student_id, 'route_id': route.id,
                   'pickup_stop_id': stops[0].id, 'dropoff_stop_id': stops[1].id}
        payload.update(extra)
        return client.post(f'{BASE}/students', json=payload)

    def test_assign_prices_binding(self, client, route, stops):
        response = self._assign(client, route, stops, transport_type='special_needs')
        assert response.status_code == 201
        binding = _data(response)
        assert binding['final_fee'] == '1000.00'
        assert binding['pickup_time'] == '07:30:00'

    def test_body_must_be_an_object(self, client, route, stops):
        response = client.post(f'{BASE}/students', json=[1, 2])
        assert response.status_code == 400
        body = response.get_json()
        assert body['success'] is False
        assert body['field'] == 'body'

    def test_duplicate_is_conflict(self, client, route, stops):
        self._assign(client, route, stops)
        response = self._assign(client, route, stops)
        assert response.status_code == 409
        assert response.get_json()['code'] == 'duplicate_active_binding'

    def test_activity_then_cancel(self, client, route, stops):
        binding = _data(self._assign(client, route, stops))

        response = client.post(f"{BASE}/students/{binding['id']}/activity",
                               json={'status': 'completed', 'delay_minutes': 5})
        assert response.status_code == 201
        assert _data(response)['performance_metrics']['average_delay_minutes'] == 5.0

        cancelled = _data(client.post(f"{BASE}/students/{binding['id']}/cancel", json={'reason': 'Moved'}))
        assert cancelled['status'] == 'cancelled'
        assert [h['status'] for h in cancelled['history']] == ['completed', 'cancelled']

        again = client.post(f"{BASE}/students/{binding['id']}/cancel", json={})
        assert again.status_code == 409
        assert again.get_json()['code'] == 'already_cancelled'

        late = client.post(f"{BASE}/students/{binding['id']}/activity", json={'status': 'completed'})
        assert late.status_code == 422

    def test_schedule_and_analytics(self, client, route, stops):
        self._assign(client, route, stops)

        schedule = _data(client.get(f'{BASE}/schedule'))
        assert [len(r['pickups']) for r in schedule] == [1]

        report = _data(client.get(f'{BASE}/schedule/report'))
        assert report['routes_missing_vehicle'] == [route.id]

        dashboard = _data(client.get(f'{BASE}/analytics/dashboard'))
        assert dashboard['summary']['active_students'] == 1

        single = _data(client.get(f'{BASE}/analytics/routes/{route.id}'))
        assert single['occupancy'] == 1

        assert client.get(f'{BASE}/analytics/weather').status_code == 400


class TestDriverEndpoints:

    def test_training_records(self, client, driver):
        response = client.post(f'{BASE}/drivers/{driver.id}/training', json={
            'training_name': 'Defensive driving', 'training_date': '2025-02-01',
            'completion_date': '2025-02-03', 'trainer': 'Road Safety Corps'
        })
        assert response.status_code == 201
        assert _data(response)['status'] == 'completed'

        client.post(f'{BASE}/drivers/{driver.id}/training', json={
            'training_name': 'First aid', 'training_date': '2025-03-10', 'trainer': 'Red Cross'
        })
        records = _data(client.get(f'{BASE}/drivers/{driver.id}/training'))
        assert [r['status'] for r in records] == ['completed', 'in_progress']

        analytics = _data(client.get(f'{BASE}/analytics/drivers/{driver.id}'))
        assert analytics['total_trainings'] == 2
        assert analytics['completed_trainings'] == 1

    def test_training_needs_trainer(self, client, driver):
        response = client.post(f'{BASE}/drivers/{driver.id}/training',
                               json={'training_name': 'First aid', 'training_date': '2025-03-10'})
        assert response.status_code == 400
        assert response.get_json()['field'] == 'trainer'

    def test_training_for_unknown_driver(self, client):
        response = client.get(f'{BASE}/drivers/9999/training')
        assert response.status_code == 404
