"""
Tests for the daily pickup/dropoff schedule
"""
from datetime import date, timedelta

from route_helpers import create_route
from student_transport_helpers import assign_transport, cancel_transport, update_transport
from schedule_helpers import get_schedule, get_daily_report
from assignment_helpers import assign_vehicle_and_driver
from conftest import route_data


def _bind(session, tenant_id, student_id, route_id, pickup_id, dropoff_id, **extra):
    data = {'student_id': student_id, 'route_id': route_id,
            'pickup_stop_id': pickup_id, 'dropoff_stop_id': dropoff_id}
    data.update(extra)
    return assign_transport(session, tenant_id, data)


class TestSchedule:

    def test_entries_follow_stop_order_on_route(self, session, tenant, stops):
        route = create_route(session, tenant.id, route_data(waypoints=[{'stop_id': s.id} for s in stops]))
        # Bound out of route order; all share the route's pickup time
        late = _bind(session, tenant.id, 1, route.id, stops[2].id, stops[0].id)
        early = _bind(session, tenant.id, 2, route.id, stops[0].id, stops[2].id)
        middle = _bind(session, tenant.id, 3, route.id, stops[1].id, stops[1].id)

        schedule = get_schedule(session, tenant.id)
        assert len(schedule) == 1
        entry = schedule[0]
        assert entry['route_id'] == route.id
        assert entry['pickup_time'] == '07:30'
        assert [p['transport_id'] for p in entry['pickups']] == [early.id, middle.id, late.id]
        assert [d['transport_id'] for d in entry['dropoffs']] == [late.id, middle.id, early.id]
        assert entry['pickups'][0]['time'] == '07:30'

    def test_window_and_status_filter(self, session, tenant, route, stops):
        today = date.today()
        current = _bind(session, tenant.id, 1, route.id, stops[0].id, stops[1].id)
        _bind(session, tenant.id, 2, route.id, stops[0].id, stops[1].id,
              start_date=(today + timedelta(days=5)).isoformat())
        ended = _bind(session, tenant.id, 3, route.id, stops[0].id, stops[1].id,
                      start_date=(today - timedelta(days=10)).isoformat(),
                      end_date=(today - timedelta(days=1)).isoformat())
        suspended = _bind(session, tenant.id, 4, route.id, stops[0].id, stops[1].id)
        update_transport(session, tenant.id, suspended.id, {'status': 'suspended'})
        cancelled = _bind(session, tenant.id, 5, route.id, stops[0].id, stops[1].id)
        cancel_transport(session, tenant.id, cancelled.id)

        pickups = get_schedule(session, tenant.id, today)[0]['pickups']
        assert [p['transport_id'] for p in pickups] == [current.id]

        yesterday = get_schedule(session, tenant.id, (today - timedelta(days=1)).isoformat())
        assert ended.id in [p['transport_id'] for p in yesterday[0]['pickups']]

    def test_routes_sorted_by_name_and_tenant_scoped(self, session, tenant, other_tenant, stops, make_route):
        zulu = make_route(route_code='Z', route_name='Zulu Loop')
        alpha = make_route(route_code='A', route_name='Alpha Loop')
        _bind(session, tenant.id, 1, zulu.id, stops[0].id, stops[1].id)
        _bind(session, tenant.id, 2, alpha.id, stops[0].id, stops[1].id)

        assert [r['route_id'] for r in get_schedule(session, tenant.id)] == [alpha.id, zulu.id]
        assert [r['route_id'] for r in get_schedule(session, tenant.id, route_id=zulu.id)] == [zulu.id]
        assert get_schedule(session, other_tenant.id) == []

    def test_empty_day(self, session, tenant, route):
        assert get_schedule(session, tenant.id) == []


class TestDailyReport:

    def test_counts_and_missing_resources(self, session, tenant, route, make_route, vehicle, driver, stops):
        staffed = make_route(route_code='R2', route_name='Staffed')
        assign_vehicle_and_driver(session, tenant.id, staffed.id, vehicle_id=vehicle.id, driver_id=driver.id)
        _bind(session, tenant.id, 1, route.id, stops[0].id, stops[1].id, special_requirements='Inhaler')
        _bind(session, tenant.id, 2, staffed.id, stops[0].id, stops[1].id)
        _bind(session, tenant.id, 3, staffed.id, stops[1].id, stops[2].id)

        report = get_daily_report(session, tenant.id)
        assert report['date'] == date.today().isoformat()
        assert report['total_routes'] == 2
        assert report['total_pickups'] == 3
        assert report['total_dropoffs'] == 3
        assert report['special_requirements'] == 1
        assert report['routes_missing_vehicle'] == [route.id]
        assert report['routes_missing_driver'] == [route.id]
