"""
Tests for vehicle and driver records, maintenance and compliance scans
"""
from datetime import date, timedelta

import pytest

from vehicle_helpers import (
    create_vehicle, get_vehicle, list_vehicles, update_vehicle, delete_vehicle,
    schedule_maintenance, vehicles_due_service
)
from driver_helpers import (
    create_driver, get_driver, update_driver, delete_driver, update_medical_check,
    add_training_record, list_training_records,
    drivers_with_expiring_licenses, drivers_due_medical_check
)
from assignment_helpers import assign_vehicle_and_driver
from transport_analytics_helpers import get_driver_analytics
from transport_models import (
    VehicleStatusEnum, MaintenancePriorityEnum, DriverStatusEnum, TrainingStatusEnum
)
from transport_errors import (
    MissingField, DuplicateCode, ResourceNotFound, ResourceInUse, InvalidValue
)


class TestVehicles:

    def test_create_defaults(self, session, tenant):
        vehicle = create_vehicle(session, tenant.id, {'vehicle_code': 'V9', 'registration_number': 'REG-9',
                                                      'vehicle_name': 'Van'})
        assert vehicle.capacity == 40
        assert vehicle.status == VehicleStatusEnum.ACTIVE
        assert vehicle.assigned_route_id is None

    def test_requires_registration(self, session, tenant):
        with pytest.raises(MissingField) as exc:
            create_vehicle(session, tenant.id, {'vehicle_code': 'V9', 'vehicle_name': 'Van'})
        assert exc.value.field == 'registration_number'

    def test_registration_unique_per_tenant(self, session, tenant, other_tenant, vehicle):
        with pytest.raises(DuplicateCode) as exc:
            create_vehicle(session, tenant.id, {'vehicle_code': 'V2', 'registration_number': 'KA-01-1234',
                                                'vehicle_name': 'Copy'})
        assert exc.value.field == 'registration_number'

        theirs = create_vehicle(session, other_tenant.id, {'vehicle_code': 'V1',
                                                           'registration_number': 'KA-01-1234',
                                                           'vehicle_name': 'Theirs'})
        assert theirs.id != vehicle.id

    def test_update_and_list(self, session, tenant, vehicle):
        update_vehicle(session, tenant.id, vehicle.id, {'status': 'out_of_service', 'capacity': '30'})
        assert get_vehicle(session, tenant.id, vehicle.id).capacity == 30
        assert list_vehicles(session, tenant.id, status='active') == []
        assert [v.id for v in list_vehicles(session, tenant.id, search='bus')] == [vehicle.id]

    def test_rejected_update_changes_nothing(self, session, tenant, vehicle):
        with pytest.raises(InvalidValue) as exc:
            update_vehicle(session, tenant.id, vehicle.id, {'vehicle_name': 'Renamed', 'capacity': 0})
        assert exc.value.field == 'capacity'

        vehicle = get_vehicle(session, tenant.id, vehicle.id)
        assert vehicle.vehicle_name == 'Bus One'
        assert vehicle.capacity == 40

    def test_tenant_scope(self, session, other_tenant, vehicle):
        with pytest.raises(ResourceNotFound):
            get_vehicle(session, other_tenant.id, vehicle.id)

    def test_delete_refused_while_assigned(self, session, tenant, route, vehicle):
        assign_vehicle_and_driver(session, tenant.id, route.id, vehicle_id=vehicle.id)
        with pytest.raises(ResourceInUse):
            delete_vehicle(session, tenant.id, vehicle.id)

    def test_delete(self, session, tenant, vehicle):
        assert delete_vehicle(session, tenant.id, vehicle.id) is True
        with pytest.raises(ResourceNotFound):
            get_vehicle(session, tenant.id, vehicle.id)


class TestMaintenance:

    def test_schedule_moves_next_service_earlier(self, session, tenant, vehicle):
        soon = date.today() + timedelta(days=10)
        record = schedule_maintenance(session, tenant.id, vehicle.id, {
            'maintenance_type': 'oil_change', 'scheduled_date': soon.isoformat(), 'estimated_cost': '120.5'
        })
        assert record.priority == MaintenancePriorityEnum.MEDIUM
        assert str(record.estimated_cost) == '120.50'
        assert get_vehicle(session, tenant.id, vehicle.id).next_service_date == soon

    def test_critical_takes_vehicle_off_road(self, session, tenant, vehicle):
        schedule_maintenance(session, tenant.id, vehicle.id, {
            'maintenance_type': 'brakes', 'scheduled_date': date.today(), 'priority': 'critical'
        })
        assert get_vehicle(session, tenant.id, vehicle.id).status == VehicleStatusEnum.MAINTENANCE

    def test_requires_date(self, session, tenant, vehicle):
        with pytest.raises(MissingField):
            schedule_maintenance(session, tenant.id, vehicle.id, {'maintenance_type': 'tyres'})

    def test_due_service_window(self, session, tenant, vehicle):
        today = date(2025, 1, 1)
        update_vehicle(session, tenant.id, vehicle.id, {'next_service_date': '2025-01-20'})
        assert [v.id for v in vehicles_due_service(session, tenant.id, days=30, today=today)] == [vehicle.id]
        assert vehicles_due_service(session, tenant.id, days=10, today=today) == []


class TestDrivers:

    def test_full_name_follows_parts(self, session, tenant, driver):
        assert driver.full_name == 'Ada Okafor'
        driver = update_driver(session, tenant.id, driver.id, {'middle_name': 'N'})
        assert driver.full_name == 'Ada N Okafor'

    def test_license_unique(self, session, tenant, driver):
        with pytest.raises(DuplicateCode) as exc:
            create_driver(session, tenant.id, {'driver_code': 'D2', 'first_name': 'B', 'last_name': 'C',
                                               'license_number': 'LIC-001'})
        assert exc.value.field == 'license_number'

    def test_rating_bounds(self, session, tenant, driver):
        with pytest.raises(InvalidValue):
            update_driver(session, tenant.id, driver.id, {'average_rating': 6})

    def test_rejected_update_keeps_name(self, session, tenant, driver):
        with pytest.raises(InvalidValue):
            update_driver(session, tenant.id, driver.id, {'first_name': 'Bola', 'average_rating': 6})

        driver = get_driver(session, tenant.id, driver.id)
        assert driver.first_name == 'Ada'
        assert driver.full_name == 'Ada Okafor'
        assert driver.average_rating == 0.0

    def test_delete_refused_while_assigned(self, session, tenant, route, driver):
        assign_vehicle_and_driver(session, tenant.id, route.id, driver_id=driver.id)
        with pytest.raises(ResourceInUse):
            delete_driver(session, tenant.id, driver.id)

    def test_medical_check_defaults_to_one_year(self, session, tenant, driver):
        driver = update_medical_check(session, tenant.id, driver.id, {'check_date': '2025-03-01'})
        assert driver.last_medical_check == date(2025, 3, 1)
        assert driver.next_medical_check == date(2026, 3, 1)
        assert driver.fitness_to_drive is True

    def test_medical_check_next_must_follow(self, session, tenant, driver):
        with pytest.raises(InvalidValue):
            update_medical_check(session, tenant.id, driver.id, {'check_date': '2025-03-01',
                                                                 'next_check_date': '2025-02-01'})

    def test_expiring_licenses(self, session, tenant, driver):
        today = date(2025, 1, 1)
        update_driver(session, tenant.id, driver.id, {'license_expiry': '2025-01-15'})
        assert [d.id for d in drivers_with_expiring_licenses(session, tenant.id, 30, today)] == [driver.id]
        assert drivers_with_expiring_licenses(session, tenant.id, 7, today) == []

        update_driver(session, tenant.id, driver.id, {'status': 'terminated'})
        assert drivers_with_expiring_licenses(session, tenant.id, 30, today) == []

    def test_never_checked_driver_is_due(self, session, tenant, driver):
        assert get_driver(session, tenant.id, driver.id).next_medical_check is None
        assert [d.id for d in drivers_due_medical_check(session, tenant.id)] == [driver.id]
        assert driver.status == DriverStatusEnum.ACTIVE


class TestDriverTraining:

    def test_completed_when_completion_date_given(self, session, tenant, driver):
        record = add_training_record(session, tenant.id, driver.id, {
            'training_name': 'Defensive driving', 'training_date': '2025-02-01',
            'completion_date': '2025-02-03', 'trainer': 'Road Safety Corps', 'score': 88
        })
        assert record.status == TrainingStatusEnum.COMPLETED
        assert record.completion_date == date(2025, 2, 3)
        assert record.score == 88.0

    def test_in_progress_without_completion_date(self, session, tenant, driver):
        record = add_training_record(session, tenant.id, driver.id, {
            'training_name': 'First aid', 'training_date': '2025-03-10', 'trainer': 'Red Cross'
        })
        assert record.status == TrainingStatusEnum.IN_PROGRESS
        assert record.completion_date is None

    def test_requires_trainer(self, session, tenant, driver):
        with pytest.raises(MissingField) as exc:
            add_training_record(session, tenant.id, driver.id, {'training_name': 'First aid',
                                                                'training_date': '2025-03-10'})
        assert exc.value.field == 'trainer'

    def test_completion_cannot_precede_training(self, session, tenant, driver):
        with pytest.raises(InvalidValue) as exc:
            add_training_record(session, tenant.id, driver.id, {
                'training_name': 'First aid', 'training_date': '2025-03-10',
                'completion_date': '2025-03-01', 'trainer': 'Red Cross'
            })
        assert exc.value.field == 'completion_date'

    def test_other_school_driver_not_found(self, session, other_tenant, driver):
        with pytest.raises(ResourceNotFound):
            add_training_record(session, other_tenant.id, driver.id, {
                'training_name': 'First aid', 'training_date': '2025-03-10', 'trainer': 'Red Cross'
            })

    def test_listed_in_date_order_and_counted(self, session, tenant, driver):
        add_training_record(session, tenant.id, driver.id, {
            'training_name': 'First aid', 'training_date': '2025-03-10', 'trainer': 'Red Cross'
        })
        add_training_record(session, tenant.id, driver.id, {
            'training_name': 'Defensive driving', 'training_date': '2025-02-01',
            'completion_date': '2025-02-03', 'trainer': 'Road Safety Corps'
        })

        records = list_training_records(session, tenant.id, driver.id)
        assert [r.training_name for r in records] == ['Defensive driving', 'First aid']

        analytics = get_driver_analytics(session, tenant.id, driver.id)
        assert analytics['total_trainings'] == 2
        assert analytics['completed_trainings'] == 1
