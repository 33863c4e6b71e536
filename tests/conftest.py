"""
Pytest configuration and shared fixtures for the transport engine tests.
"""
import os
import sys
from datetime import time

import pytest
from flask_login import FlaskLoginClient

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db_single
from models import Tenant, User
from stop_helpers import create_stop
from route_helpers import create_route
from vehicle_helpers import create_vehicle
from driver_helpers import create_driver


# ============================================================
# DATABASE
# ============================================================

@pytest.fixture
def database_uri(tmp_path):
    """File-backed sqlite so worker threads share one database."""
    return f"sqlite:///{tmp_path / 'transport.db'}"


@pytest.fixture
def database(database_uri):
    db_single.init_database(database_uri)
    db_single.create_tables()
    yield database_uri
    db_single.ENGINE.dispose()


@pytest.fixture
def session(database):
    s = db_single.get_session()
    yield s
    s.close()


@pytest.fixture
def new_session(database):
    """Factory for extra sessions (one per worker thread)."""
    opened = []

    def _open():
        s = db_single.get_session()
        opened.append(s)
        return s

    yield _open
    for s in opened:
        s.close()


# ============================================================
# TENANTS AND USERS
# ============================================================

def _make_tenant(session, slug, name):
    tenant = Tenant(slug=slug, name=name, is_active=True)
    session.add(tenant)
    session.commit()
    return tenant


@pytest.fixture
def tenant(session):
    return _make_tenant(session, 'greenfield', 'Greenfield Public School')


@pytest.fixture
def other_tenant(session):
    return _make_tenant(session, 'riverside', 'Riverside Academy')


@pytest.fixture
def user(session, tenant):
    u = User(tenant_id=tenant.id, username='fleet', role='transport_manager',
             first_name='Fleet', last_name='Manager', is_active=True)
    session.add(u)
    session.commit()
    return u


# ============================================================
# TRANSPORT RECORDS
# ============================================================

@pytest.fixture
def stops(session, tenant):
    """Three registry stops roughly 1.5 km apart."""
    return [
        create_stop(session, tenant.id, {'stop_name': 'Stop A', 'stop_code': 'A',
                                         'latitude': 6.45, 'longitude': 3.39, 'capacity_estimate': 10}),
        create_stop(session, tenant.id, {'stop_name': 'Stop B', 'stop_code': 'B',
                                         'latitude': 6.46, 'longitude': 3.40, 'capacity_estimate': 15}),
        create_stop(session, tenant.id, {'stop_name': 'Stop C', 'stop_code': 'C',
                                         'latitude': 6.47, 'longitude': 3.41, 'capacity_estimate': 5}),
    ]


def route_data(**overrides):
    data = {
        'route_code': 'R1',
        'route_name': 'North Loop',
        'start_location': 'Depot',
        'end_location': 'School',
        'distance_km': 10,
        'estimated_duration_minutes': 20,
        'capacity': 40,
        'pickup_time': time(7, 30),
        'dropoff_time': time(14, 45),
        'base_fee': 500,
        'distance_fee': 20,
        'special_needs_fee': 300,
        'emergency_fee': 150,
    }
    data.update(overrides)
    return data


@pytest.fixture
def route(session, tenant):
    return create_route(session, tenant.id, route_data())


@pytest.fixture
def make_route(session, tenant):
    def _make(**overrides):
        return create_route(session, tenant.id, route_data(**overrides))
    return _make


@pytest.fixture
def vehicle(session, tenant):
    return create_vehicle(session, tenant.id, {'vehicle_code': 'V1', 'registration_number': 'KA-01-1234',
                                               'vehicle_name': 'Bus One', 'capacity': 40})


@pytest.fixture
def driver(session, tenant):
    return create_driver(session, tenant.id, {'driver_code': 'D1', 'first_name': 'Ada',
                                              'last_name': 'Okafor', 'license_number': 'LIC-001'})


# ============================================================
# FLASK
# ============================================================

@pytest.fixture
def app(database, monkeypatch):
    monkeypatch.setenv('TEST_DATABASE_URL', database)
    from main import create_app

    app = create_app('testing')
    app.test_client_class = FlaskLoginClient
    return app


@pytest.fixture
def client(app, user):
    return app.test_client(user=user)
