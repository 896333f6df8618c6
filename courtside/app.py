import logging

from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from courtside.config import config

db = SQLAlchemy()
socketio = SocketIO()

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def _configure_logging(app):
    level = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('courtside').setLevel(level)


def _ensure_game_indexes():
    """Add indexes introduced after a database was first created."""
    from courtside.models import Game
    for index in Game.__table__.indexes:
        index.create(db.engine, checkfirst=True)


def create_app(config_name='development'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    _configure_logging(app)

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')

    db.init_app(app)
    from courtside.routes import live  # noqa: F401  registers socket handlers
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})

    @app.before_request
    def _enforce_origin_for_mutating_api_requests():
        if request.method in {'GET', 'HEAD', 'OPTIONS'}:
            return None
        if not request.path.startswith('/api/'):
            return None

        origin = str(request.headers.get('Origin') or '').strip()
        if not origin:
            return None

        configured_origins = _parse_allowed_origins(
            app.config.get('CORS_ALLOWED_ORIGINS', '*')
        )
        if configured_origins != '*' and origin not in configured_origins:
            return jsonify({'error': 'Invalid request origin'}), 403

        auth_header = str(request.headers.get('Authorization') or '').strip()
        if not auth_header:
            return None

        csrf_header = request.headers.get('X-CSRF-Token')
        from courtside.auth_utils import csrf_token_matches
        if not csrf_token_matches(auth_header, csrf_header):
            return jsonify({'error': 'Invalid CSRF token'}), 403
        return None

    from courtside.routes.queue import queue_bp
    from courtside.routes.courts import courts_bp
    from courtside.routes.users import users_bp
    from courtside.routes.settings import settings_bp

    app.register_blueprint(queue_bp, url_prefix='/api/queue')
    app.register_blueprint(courts_bp, url_prefix='/api/courts')
    app.register_blueprint(users_bp, url_prefix='/api/users')
    app.register_blueprint(settings_bp, url_prefix='/api/config')

    from courtside.services.court_seeder import seed_courts
    from courtside.services.queue_service import init_queue_service

    with app.app_context():
        from courtside import models  # noqa: F401
        db.create_all()
        _ensure_game_indexes()
        seeded = seed_courts(app.config.get('SEED_COURTS', 0))
        if seeded:
            app.logger.info('Seeded %s courts', seeded)

        service = init_queue_service(app, socketio)
        # Claims left behind by a previous process get adopted here.
        service.refresh()

    if app.config.get('QUEUE_BACKGROUND_TASKS', True):
        service.start_background()

    return app
