"""
API token authentication for the HTTP API.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


TOKEN_HEADER = 'X-API-Token'


def verify_token(expected: str, provided: str) -> bool:
    """
    Compare tokens in constant time.

    Args:
        expected: Configured API token (empty or None disables access)
        provided: Token from the request

    Returns:
        True if the tokens match, False otherwise
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def require_api_token(view):
    """
    Reject requests whose X-API-Token header does not match API_TOKEN.

    When no token is configured every request is rejected.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if not expected:
            return jsonify({'error': 'API token not configured'}), 503

        if not verify_token(expected, request.headers.get(TOKEN_HEADER, '')):
            return jsonify({'error': 'Invalid API token'}), 401

        return view(*args, **kwargs)

    return wrapper
