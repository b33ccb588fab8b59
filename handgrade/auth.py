"""
Supabase JWT authentication for Handgrade.
Validates Bearer tokens on all /api/ routes except public endpoints.
"""
import logging

import jwt
from flask import g, jsonify, request

logger = logging.getLogger(__name__)

LOCAL_DEV_USER = 'local-dev'

# Routes that don't require authentication
PUBLIC_PREFIXES = []

PUBLIC_EXACT = [
    '/api/status',         # Health and queue occupancy
]


def validate_token(token, secret):
    """
    Validate a Supabase JWT and return the decoded payload.
    Returns None if invalid.
    """
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=['HS256'],
            audience='authenticated',
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def is_public_route(path):
    """Check if a route is public (no auth required)."""
    if path in PUBLIC_EXACT:
        return True
    for prefix in PUBLIC_PREFIXES:
        if path.startswith(prefix):
            return True
    return False


def init_auth(app, settings):
    """
    Register the before_request auth hook on the Flask app.

    When no JWT secret is configured and DEBUG is on, every request runs
    as the local-dev user. Without DEBUG, a missing secret rejects all
    protected routes.
    """
    local_dev = not settings.supabase_jwt_secret and settings.debug
    if local_dev:
        logger.warning("SUPABASE_JWT_SECRET not set; requests run as '%s'", LOCAL_DEV_USER)

    @app.before_request
    def check_auth():
        # Skip non-API routes
        if not request.path.startswith('/api/'):
            return None

        if is_public_route(request.path):
            return None

        if local_dev:
            g.user_id = LOCAL_DEV_USER
            g.user_email = ''
            return None

        if not settings.supabase_jwt_secret:
            logger.error("SUPABASE_JWT_SECRET not configured")
            return jsonify({'status': 'error', 'message': 'Authentication is not configured'}), 401

        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer '):
            return jsonify({'status': 'error', 'message': 'Authentication required'}), 401

        token = auth_header[7:]  # Strip 'Bearer '
        payload = validate_token(token, settings.supabase_jwt_secret)
        if payload is None or not payload.get('sub'):
            return jsonify({'status': 'error', 'message': 'Invalid or expired token'}), 401

        # Attach user info to Flask's g object for use in route handlers
        g.user_id = payload.get('sub')
        g.user_email = payload.get('email', '')
        return None
