"""
Engine and session factory shared by every school
All tenants live in one database; rows carry tenant_id
"""

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base, Tenant
import logging

logger = logging.getLogger(__name__)

ENGINE = None
SessionLocal = None


def init_database(database_uri: str = None, config_obj: Config = None):
    """(Re)build the engine and session factory; replaces any previous engine"""
    global ENGINE, SessionLocal

    config_obj = config_obj or Config()
    database_uri = database_uri or config_obj.get_database_uri()
    engine_options = dict(config_obj.SQLALCHEMY_ENGINE_OPTIONS)

    if database_uri.startswith('sqlite'):
        # sqlite connections are shared across request threads
        engine_options = {'connect_args': {'check_same_thread': False, 'timeout': 30}}
        if ':memory:' in database_uri or database_uri == 'sqlite://':
            engine_options['poolclass'] = StaticPool

    if ENGINE is not None:
        ENGINE.dispose()

    ENGINE = create_engine(database_uri, **engine_options)
    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)

    logger.info(f"Transport database engine ready: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal


def get_session():
    if SessionLocal is None:
        init_database()
    return SessionLocal()


def create_tables():
    """Create tenant, operator and transport tables"""
    import transport_models  # noqa: F401  registers transport tables

    if ENGINE is None:
        init_database()
    Base.metadata.create_all(ENGINE)
    logger.info(f"Ensured {len(Base.metadata.tables)} tables exist")


def create_school(slug: str, name: str) -> tuple[bool, str]:
    """
    Register a school

    Args:
        slug: URL segment that selects the school in /<slug>/transport/api
        name: display name

    Returns:
        (ok, message) for the CLI to echo
    """
    session = get_session()
    try:
        if session.query(Tenant).filter_by(slug=slug).first():
            return False, f"Slug '{slug}' is already taken"

        session.add(Tenant(slug=slug, name=name, is_active=True))
        session.commit()

        logger.info(f"Registered school {slug} ({name})")
        return True, f"Registered '{name}' as /{slug}"

    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Could not register school {slug}: {e}")
        return False, f"Could not register school: {e}"
    finally:
        session.close()


def list_schools() -> list:
    """Active schools ordered by name"""
    session = get_session()
    try:
        return session.query(Tenant).filter_by(is_active=True).order_by(Tenant.name).all()
    finally:
        session.close()
