"""Tests for app startup, config helpers and seeding."""
import pytest

from courtside.app import _parse_allowed_origins, create_app
from courtside.config import (
    ProductionConfig, _env_bool, _env_float, _env_int, _normalize_database_url,
)


def test_env_helpers(monkeypatch):
    monkeypatch.setenv('COURTSIDE_FLAG', 'yes')
    monkeypatch.setenv('COURTSIDE_INT', 'seven')
    monkeypatch.setenv('COURTSIDE_FLOAT', '0.25')
    assert _env_bool('COURTSIDE_FLAG') is True
    assert _env_bool('COURTSIDE_MISSING', default=True) is True
    assert _env_int('COURTSIDE_INT', 3) == 3
    assert _env_float('COURTSIDE_FLOAT', 1.0) == 0.25


def test_normalize_database_url():
    assert _normalize_database_url('postgres://u@h/db') == 'postgresql://u@h/db'
    assert _normalize_database_url('sqlite:///x.db') == 'sqlite:///x.db'


def test_parse_allowed_origins():
    assert _parse_allowed_origins('') == '*'
    assert _parse_allowed_origins('https://a.test, https://b.test') == ['https://a.test', 'https://b.test']


def test_production_requires_secret_key(monkeypatch):
    monkeypatch.setattr(ProductionConfig, 'SECRET_KEY', 'dev-secret-key-change-in-prod')
    with pytest.raises(RuntimeError, match='SECRET_KEY'):
        create_app('production')


def test_production_requires_explicit_origins(monkeypatch):
    monkeypatch.setattr(ProductionConfig, 'SECRET_KEY', 'a-real-secret')
    monkeypatch.setattr(ProductionConfig, 'CORS_ALLOWED_ORIGINS', '*')
    with pytest.raises(RuntimeError, match='CORS_ALLOWED_ORIGINS'):
        create_app('production')


def test_testing_config_runs_inline(app):
    assert app.config['QUEUE_BACKGROUND_TASKS'] is False
    assert app.config['CLAIM_PACING_SECONDS'] == 0
    assert 'courtside' in app.extensions


def test_seed_courts_only_when_empty(app):
    from courtside.models import Court
    from courtside.services.court_seeder import seed_courts

    assert seed_courts(3) == 3
    assert [c.name for c in Court.query.order_by(Court.id)] == ['Court 1', 'Court 2', 'Court 3']
    assert seed_courts(3) == 0
