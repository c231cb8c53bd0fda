import os


def _database_url():
    url = os.environ.get('DATABASE_URL')
    if not url:
        # Relative SQLite paths resolve inside the Flask instance folder
        return 'sqlite:///smashledger.db'
    # Heroku PostgreSQL URL fix (postgres:// → postgresql://)
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'smashledger-dev')

    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Settlement
    PLATFORM_FEE_PERCENT = int(os.environ.get('PLATFORM_FEE_PERCENT', '5'))
    FIRST_PAYOUT_PERCENT = int(os.environ.get('FIRST_PAYOUT_PERCENT', '30'))
    PAYOUT_GRACE_DAYS = int(os.environ.get('PAYOUT_GRACE_DAYS', '7'))
    CANCELLATION_REASON_MIN_LENGTH = int(os.environ.get('CANCELLATION_REASON_MIN_LENGTH', '10'))
    # "days:percent" pairs, e.g. "7:100,3:50,0:0"; empty means full refund
    REFUND_SCHEDULE = os.environ.get('REFUND_SCHEDULE', '')

    IMPERSONATION_TTL_MINUTES = int(os.environ.get('IMPERSONATION_TTL_MINUTES', '30'))


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'WARNING')


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    LOG_LEVEL = 'DEBUG'
    REFUND_SCHEDULE = ''


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig,
}
