import os

from sqlalchemy.pool import StaticPool

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    SEED_COURTS = _env_int('SEED_COURTS', 3)

    # Scheduling
    COUNTDOWN_SECONDS = _env_int('COUNTDOWN_SECONDS', 5)
    CLAIM_PACING_SECONDS = _env_float('CLAIM_PACING_SECONDS', 0.5)
    FINISH_SETTLE_SECONDS = _env_float('FINISH_SETTLE_SECONDS', 1.0)
    TIMER_TICK_SECONDS = _env_float('TIMER_TICK_SECONDS', 1.0)

    # Change notifications
    GAMES_DEBOUNCE_SECONDS = _env_float('GAMES_DEBOUNCE_SECONDS', 0.3)
    USERS_DEBOUNCE_SECONDS = _env_float('USERS_DEBOUNCE_SECONDS', 0.5)
    LIVENESS_TIMEOUT_SECONDS = _env_float('LIVENESS_TIMEOUT_SECONDS', 10.0)
    POLL_INTERVAL_SECONDS = _env_float('POLL_INTERVAL_SECONDS', 10.0)
    BRIDGE_PUMP_SECONDS = _env_float('BRIDGE_PUMP_SECONDS', 0.1)

    QUEUE_BACKGROUND_TASKS = _env_bool('QUEUE_BACKGROUND_TASKS', True)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'courtside_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'poolclass': StaticPool,
        'connect_args': {'check_same_thread': False},
    }
    SEED_COURTS = 0
    CLAIM_PACING_SECONDS = 0
    FINISH_SETTLE_SECONDS = 0
    QUEUE_BACKGROUND_TASKS = False


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
