import os
from dotenv import load_dotenv

load_dotenv()


def _env_list(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return [item.strip() for item in raw.split(',') if item.strip()]


class Config:
    """Base configuration class."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Outbound dispatch configuration
    DISPATCH_BACKEND = os.environ.get('DISPATCH_BACKEND', 'log')  # log, resend, http
    DISPATCH_FROM_EMAIL = os.environ.get('DISPATCH_FROM_EMAIL', 'accounts@followup.example')
    DISPATCH_HTTP_URL = os.environ.get('DISPATCH_HTTP_URL')
    DISPATCH_HTTP_TOKEN = os.environ.get('DISPATCH_HTTP_TOKEN')
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
    DISPATCH_TIMEOUT_SECONDS = float(os.environ.get('DISPATCH_TIMEOUT_SECONDS', '30'))
    DISPATCH_WORKERS = int(os.environ.get('DISPATCH_WORKERS', '4'))  # threads for in-flight provider calls
    MAX_DISPATCH_ATTEMPTS = int(os.environ.get('MAX_DISPATCH_ATTEMPTS', '3'))
    RETRY_BACKOFF_BASE_SECONDS = int(os.environ.get('RETRY_BACKOFF_BASE_SECONDS', '300'))  # 5 minutes
    RETRY_BACKOFF_MAX_SECONDS = int(os.environ.get('RETRY_BACKOFF_MAX_SECONDS', '21600'))  # 6 hours

    # Engagement webhook configuration
    ENGAGEMENT_WEBHOOK_SECRET = os.environ.get('ENGAGEMENT_WEBHOOK_SECRET')

    # Compliance configuration
    COMPLIANCE_COOLDOWN_MINUTES = int(os.environ.get('COMPLIANCE_COOLDOWN_MINUTES', '60'))
    COMPLIANCE_MIN_SCORE = int(os.environ.get('COMPLIANCE_MIN_SCORE', '60'))

    # Trigger eligibility configuration
    MAX_EMAILS_PER_RECIPIENT_PER_DAY = int(os.environ.get('MAX_EMAILS_PER_RECIPIENT_PER_DAY', '3'))
    MIN_INVOICE_AMOUNT = float(os.environ.get('MIN_INVOICE_AMOUNT', '10'))

    # Scheduler configuration
    START_SCHEDULER = os.environ.get('START_SCHEDULER', 'false').lower() == 'true'
    SCHEDULER_WORKERS = int(os.environ.get('SCHEDULER_WORKERS', '2'))
    SCHEDULER_POLL_INTERVAL_SECONDS = int(os.environ.get('SCHEDULER_POLL_INTERVAL_SECONDS', '30'))
    SCHEDULER_BATCH_SIZE = int(os.environ.get('SCHEDULER_BATCH_SIZE', '50'))
    TRIGGER_SCAN_INTERVAL_SECONDS = int(os.environ.get('TRIGGER_SCAN_INTERVAL_SECONDS', '3600'))
    LEASE_SECONDS = int(os.environ.get('LEASE_SECONDS', '120'))

    # Default business calendar for new companies (UAE working week)
    DEFAULT_TIMEZONE = os.environ.get('DEFAULT_TIMEZONE', 'Asia/Dubai')
    DEFAULT_WORKING_DAYS = [int(day) for day in _env_list('DEFAULT_WORKING_DAYS', ['0', '1', '2', '3', '4'])]
    DEFAULT_START_HOUR = int(os.environ.get('DEFAULT_START_HOUR', '8'))
    DEFAULT_END_HOUR = int(os.environ.get('DEFAULT_END_HOUR', '18'))

    # CORS configuration
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

    # Logging configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///followup_engine.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = True

    TESTING = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False

    # Production database (PostgreSQL)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Production CORS (more restrictive)
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '').split(',')

    @classmethod
    def validate_config(cls):
        """Validate production configuration."""
        if not cls.SQLALCHEMY_DATABASE_URI:
            raise ValueError("DATABASE_URL environment variable is required for production")

        if not cls.SECRET_KEY:
            raise ValueError("SECRET_KEY environment variable is required for production")

        if cls.DISPATCH_BACKEND == 'resend' and not cls.RESEND_API_KEY:
            raise ValueError("RESEND_API_KEY environment variable is required for the resend backend")

        if cls.DISPATCH_BACKEND == 'http' and not cls.DISPATCH_HTTP_URL:
            raise ValueError("DISPATCH_HTTP_URL environment variable is required for the http backend")

        if cls.DISPATCH_BACKEND == 'log':
            raise ValueError("DISPATCH_BACKEND must be 'resend' or 'http' in production")

        if not cls.ENGAGEMENT_WEBHOOK_SECRET:
            raise ValueError("ENGAGEMENT_WEBHOOK_SECRET environment variable is required for production")

        if not cls.CORS_ORIGINS or cls.CORS_ORIGINS == ['']:
            raise ValueError("CORS_ORIGINS environment variable is required for production")


class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    START_SCHEDULER = False
    DISPATCH_BACKEND = 'log'
    ENGAGEMENT_WEBHOOK_SECRET = None
    DISPATCH_TIMEOUT_SECONDS = 5


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
