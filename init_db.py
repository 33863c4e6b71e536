"""
Startup schema check
Runs from main (or `flask setup-db`): makes sure the database exists and
creates whichever tenant/transport tables are missing
"""

import sys
from datetime import datetime

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError, ProgrammingError
from dotenv import load_dotenv

load_dotenv()

# model imports register every table on Base.metadata
from models import Base, Tenant, User  # noqa: F401
import transport_models  # noqa: F401
import db_single

BANNER = "=" * 60


def create_database_if_not_exists(db_url):
    """MySQL only; sqlite creates its file on first connect"""
    if 'mysql' not in db_url:
        return

    url_obj = make_url(db_url)
    db_name = url_obj.database
    server_engine = create_engine(url_obj.set(database='mysql'))
    try:
        with server_engine.connect() as conn:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(text(f'CREATE DATABASE IF NOT EXISTS `{db_name}`'))
            print(f"Database {db_name} present")
    except (OperationalError, ProgrammingError) as e:
        print(f"Warning: CREATE DATABASE {db_name} failed: {e}")
    finally:
        server_engine.dispose()


def missing_tables(engine) -> set:
    present = set(inspect(engine).get_table_names())
    return set(Base.metadata.tables.keys()) - present


def create_missing_tables(engine, missing) -> list:
    """Create the given tables; returns their names sorted"""
    if not missing:
        return []

    for name in sorted(missing):
        print(f"  + {name}")

    # create_all orders by foreign keys and emits the route/vehicle/driver cycle as ALTERs
    tables = [Base.metadata.tables[name] for name in missing]
    Base.metadata.create_all(engine, tables=tables, checkfirst=True)
    return sorted(missing)


def initialize_database(database_uri=None, verbose=True):
    """
    Connect, then create missing tables
    Returns: (success, created_tables, issues)
    """
    if verbose:
        print(BANNER)
        print(f"Transport schema check {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    try:
        if database_uri or db_single.ENGINE is None:
            if database_uri:
                create_database_if_not_exists(database_uri)
            db_single.init_database(database_uri)
        engine = db_single.ENGINE

        with engine.connect():
            if verbose:
                print(f"Connected to {engine.url.render_as_string(hide_password=True)}")

        missing = missing_tables(engine)
        if verbose:
            print(f"{len(Base.metadata.tables)} tables declared, {len(missing)} missing")

        created = create_missing_tables(engine, missing)

        if verbose:
            print(f"[OK] created {len(created)} tables" if created else "[OK] schema complete")
            print(BANNER)

        return True, created, []

    except (OperationalError, ProgrammingError) as e:
        print(f"[ERROR] schema check failed: {e}")
        return False, [], [{'error': str(e)}]


def run_on_startup(database_uri=None):
    success, _, _ = initialize_database(database_uri, verbose=True)
    if not success:
        print("[WARNING] transport tables unavailable; check DATABASE_URL / DB_* settings")
    return success


if __name__ == '__main__':
    sys.exit(0 if run_on_startup() else 1)
