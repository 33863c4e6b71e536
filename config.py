"""
Configuration for the multi-tenant Transport Routing & Assignment Engine
"""

import os
from urllib.parse import quote_plus
import dotenv
dotenv.load_dotenv()  # Load environment variables from .env file


class Config:
    """Base configuration shared by all environments"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'transport-dev-key'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Database settings (DATABASE_URL wins, otherwise assembled from DB_* parts)
    DATABASE_URL = os.environ.get('DATABASE_URL')
    MYSQL_HOST = os.environ.get('DB_HOST', 'localhost')
    MYSQL_PORT = int(os.environ.get('DB_PORT', 3306))
    MYSQL_USERNAME = os.environ.get('DB_USER', 'transport')
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME', 'transport_engine')
    MYSQL_CHARSET = 'utf8mb4'

    # SQLAlchemy settings
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
    }

    # Create missing tables when the app starts
    AUTO_INIT_DB = os.environ.get('AUTO_INIT_DB', '1').lower() in ('1', 'true', 'yes')

    # Transport defaults
    TRANSPORT_ASSUMED_SPEED_KMH = float(os.environ.get('TRANSPORT_ASSUMED_SPEED_KMH', 30))
    ROUTE_CAPACITY_BUFFER = int(os.environ.get('ROUTE_CAPACITY_BUFFER', 5))
    ROUTE_MIN_CAPACITY = int(os.environ.get('ROUTE_MIN_CAPACITY', 20))
    EXPIRY_WARNING_DAYS = int(os.environ.get('EXPIRY_WARNING_DAYS', 30))
    MAINTENANCE_ALERT_RATE = float(os.environ.get('MAINTENANCE_ALERT_RATE', 20))

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get single database URI for all tenants."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_ENGINE_OPTIONS = {}

    def get_database_uri(self) -> str:
        return os.environ.get('TEST_DATABASE_URL', 'sqlite:///:memory:')


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
