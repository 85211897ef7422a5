import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'exam_engine_secret_key_123')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///database.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'eventlet')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Retake policy: completed attempts allowed per (student, assessment). 0 = unlimited.
    EXAM_MAX_ATTEMPTS = _env_int('EXAM_MAX_ATTEMPTS', 1)
    # Breaches tolerated before the session is auto-submitted.
    EXAM_VIOLATION_LIMIT = _env_int('EXAM_VIOLATION_LIMIT', 1)
    EXAM_VIOLATION_COOLDOWN_SEC = _env_float('EXAM_VIOLATION_COOLDOWN_SEC', 2.5)
    # Late arrivals past the deadline plus this margin are recorded as auto-submitted.
    EXAM_SUBMIT_GRACE_SEC = _env_int('EXAM_SUBMIT_GRACE_SEC', 30)
    EXAM_SUBMIT_RETRIES = _env_int('EXAM_SUBMIT_RETRIES', 1)

    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = _env_int('SMTP_PORT', 587)
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASS = os.environ.get('SMTP_PASS')
    SMTP_FROM = os.environ.get('SMTP_FROM') or SMTP_USER


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SOCKETIO_ASYNC_MODE = 'threading'
    EXAM_VIOLATION_COOLDOWN_SEC = 0.0
    SMTP_HOST = None
