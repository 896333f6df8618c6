"""Bearer-token checks for the venue desk API.

Tokens are issued by the venue's sign-in service and signed with the shared
``SECRET_KEY``; this module only verifies them. Mutating requests also carry
an ``X-CSRF-Token`` derived from the bearer token.
"""
import hashlib
import hmac
from functools import wraps

import jwt
from flask import current_app, jsonify, request

from courtside.app import db
from courtside.models import User, VenueConfig

TOKEN_ALGORITHM = 'HS256'


class AuthError(Exception):
    def __init__(self, message, status=401):
        super().__init__(message)
        self.message = message
        self.status = status


def bearer_token(raw_header):
    token = str(raw_header or '').strip()
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1].strip()
    return token


def resolve_desk_user(raw_header):
    """Return the active user behind an ``Authorization`` header, or raise ``AuthError``."""
    token = bearer_token(raw_header)
    if not token:
        raise AuthError('Authentication required')
    try:
        payload = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError('Token expired')
    except jwt.InvalidTokenError:
        raise AuthError('Invalid token')
    user_id = payload.get('user_id')
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        raise AuthError('User not found')
    return user


def csrf_token_for(raw_header):
    token = bearer_token(raw_header)
    secret = str(current_app.config.get('SECRET_KEY') or '')
    if not token or not secret:
        return ''
    return hmac.new(secret.encode('utf-8'), token.encode('utf-8'), hashlib.sha256).hexdigest()


def csrf_token_matches(raw_header, candidate):
    expected = csrf_token_for(raw_header)
    provided = str(candidate or '').strip()
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected, provided)


def _authenticated(check):
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            try:
                user = resolve_desk_user(request.headers.get('Authorization', ''))
                check(user)
            except AuthError as exc:
                return jsonify({'error': exc.message}), exc.status
            request.current_user = user
            return f(*args, **kwargs)
        return decorated
    return decorator


def _any_desk_user(user):
    return None


def _admin_only(user):
    if not user.is_admin:
        raise AuthError('Admin access required', 403)


login_required = _authenticated(_any_desk_user)
admin_required = _authenticated(_admin_only)


def admin_or_venue_setting(setting):
    """Admins always pass; other desk users only while the venue has ``setting`` on."""
    def check(user):
        if user.is_admin:
            return
        config = VenueConfig.query.order_by(VenueConfig.id.asc()).first()
        if config is None or not getattr(config, setting, False):
            raise AuthError('Admin access required', 403)
    return _authenticated(check)
