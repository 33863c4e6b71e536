"""
Flask CLI commands for the transport engine
Schema bootstrap, school and operator registration, compliance scans
"""

import click
from flask import Flask
from sqlalchemy import func
from db_single import create_school, list_schools, get_session
from init_db import run_on_startup
from models import User, Tenant
from config import Config
from transport_models import TransportRoute, TransportVehicle, TransportDriver, StudentTransport, TransportStatusEnum
from vehicle_helpers import vehicles_due_service
from driver_helpers import drivers_with_expiring_licenses, drivers_due_medical_check
import logging

logger = logging.getLogger(__name__)

RULE = "-" * 60


def _find_school(session, slug):
    school = session.query(Tenant).filter_by(slug=slug).first()
    if not school:
        click.echo(f"❌ No school with slug '{slug}'")
    return school


def _transport_counts(session, tenant_id) -> dict:
    def count(model, *filters):
        return session.query(func.count(model.id)).filter(model.tenant_id == tenant_id, *filters).scalar()

    return {
        'routes': count(TransportRoute),
        'vehicles': count(TransportVehicle),
        'drivers': count(TransportDriver),
        'riders': count(StudentTransport, StudentTransport.status == TransportStatusEnum.ACTIVE),
    }


def register_cli_commands(app: Flask):
    """Attach the transport commands to app.cli"""

    @app.cli.command("setup-db")
    def setup_db_command():
        """Create the database and any missing transport tables"""
        click.echo("🚀 Checking transport schema...")
        ok = run_on_startup()
        click.echo("✅ Transport schema ready" if ok else "❌ Schema setup failed, see output above")

    @app.cli.command("add-school")
    @click.option("--slug", required=True, help="URL segment for the school (e.g. greenfield)")
    @click.option("--name", required=True, help="Display name (e.g. 'Greenfield Public School')")
    def add_school_command(slug, name):
        """Register a school so its transport API becomes reachable"""
        success, message = create_school(slug, name)
        if not success:
            click.echo(f"❌ {message}")
            return
        click.echo(f"✅ {message}")
        click.echo(f"🚌 Transport API: /{slug}/transport/api/")

    @app.cli.command("list-schools")
    def list_schools_command():
        """Active schools with their transport record counts"""
        schools = list_schools()
        if not schools:
            click.echo("📭 No active schools")
            return

        session = get_session()
        try:
            click.echo(RULE)
            for school in schools:
                counts = _transport_counts(session, school.id)
                click.echo(f"  {school.name} (/{school.slug}/transport/api/)")
                click.echo(f"    routes {counts['routes']}, vehicles {counts['vehicles']}, "
                           f"drivers {counts['drivers']}, active riders {counts['riders']}")
                click.echo(RULE)
        finally:
            session.close()

    @app.cli.command("create-school-user")
    @click.option("--slug", required=True, help="School slug")
    @click.option("--username", required=True, help="Login name known to the auth service")
    @click.option("--email", help="Contact email")
    @click.option("--role", default="transport_manager", help="school_admin or transport_manager")
    @click.option("--first-name", default="", help="First name")
    @click.option("--last-name", default="", help="Last name")
    def create_school_user_command(slug, username, email, role, first_name, last_name):
        """Register an operator whose id is stamped on transport changes"""
        session = get_session()
        try:
            school = _find_school(session, slug)
            if not school:
                return
            if session.query(User).filter_by(tenant_id=school.id, username=username).first():
                click.echo(f"❌ {school.slug} already has an operator called '{username}'")
                return

            user = User(tenant_id=school.id, username=username, email=email, role=role,
                        first_name=first_name, last_name=last_name, is_active=True)
            session.add(user)
            session.commit()
            click.echo(f"✅ {role} '{user.display_name}' created for {school.name} (id {user.id})")
        finally:
            session.close()

    @app.cli.command("transport-expiry-scan")
    @click.option("--slug", required=True, help="School slug")
    @click.option("--days", default=None, type=int, help="Look-ahead window in days (default from config)")
    def transport_expiry_scan_command(slug, days):
        """List licences, medical checks and vehicle services falling due"""
        days = Config.EXPIRY_WARNING_DAYS if days is None else days
        session = get_session()
        try:
            school = _find_school(session, slug)
            if not school:
                return

            licenses = drivers_with_expiring_licenses(session, school.id, days)
            medicals = drivers_due_medical_check(session, school.id, days)
            vehicles = vehicles_due_service(session, school.id, days)

            click.echo(f"🔎 Compliance scan for {school.name} (next {days} days)")
            click.echo(RULE)
            click.echo(f"  Licences expiring: {len(licenses)}")
            for driver in licenses:
                click.echo(f"    {driver.driver_code} {driver.full_name}: {driver.license_expiry.isoformat()}")
            click.echo(f"  Medical checks due: {len(medicals)}")
            for driver in medicals:
                due = driver.next_medical_check.isoformat() if driver.next_medical_check else 'never checked'
                click.echo(f"    {driver.driver_code} {driver.full_name}: {due}")
            click.echo(f"  Vehicles due service/insurance: {len(vehicles)}")
            for vehicle in vehicles:
                service = vehicle.next_service_date.isoformat() if vehicle.next_service_date else '-'
                insurance = vehicle.insurance_expiry.isoformat() if vehicle.insurance_expiry else '-'
                click.echo(f"    {vehicle.registration_number}: service {service}, insurance {insurance}")

            logger.info(f"Expiry scan for tenant {school.id}: {len(licenses)} licences, "
                        f"{len(medicals)} medical checks, {len(vehicles)} vehicles")
        finally:
            session.close()


USAGE_EXAMPLES = """
flask setup-db
flask add-school --slug greenfield --name "Greenfield Public School"
flask create-school-user --slug greenfield --username fleet --role transport_manager
flask list-schools
flask transport-expiry-scan --slug greenfield --days 14
"""

if __name__ == "__main__":
    print("Transport engine CLI")
    print(USAGE_EXAMPLES)
