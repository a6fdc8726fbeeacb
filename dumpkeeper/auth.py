"""
Authentication utilities for Flask-Login integration and API tokens.

Operators authenticate every request with `Authorization: Bearer <token>`.
Only a werkzeug hash of each token is stored; the first characters of the
token are kept in clear text to find the candidate row.
"""

import secrets
from typing import Optional, Tuple

from flask import jsonify
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from dumpkeeper import db
from dumpkeeper.models import Operator

TOKEN_PREFIX_LENGTH = 8


def hash_token(token: str) -> str:
    """
    Hash an API token using werkzeug's pbkdf2:sha256.

    Args:
        token: Plain text token

    Returns:
        Hashed token string
    """
    return generate_password_hash(token, method='pbkdf2:sha256')


def verify_token(token_hash: str, token: str) -> bool:
    """
    Verify a token against its hash.

    Args:
        token_hash: Stored token hash
        token: Plain text token to verify

    Returns:
        True if token matches, False otherwise
    """
    return check_password_hash(token_hash, token)


def validate_token_strength(token: str) -> tuple[bool, str]:
    """
    Validate an externally supplied token (bootstrap token).

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(token) < 24:
        return False, "API token must be at least 24 characters long"
    if token.strip() != token or ' ' in token:
        return False, "API token must not contain whitespace"
    return True, ""


class OperatorUser(UserMixin):
    """
    Flask-Login user wrapper for the Operator database model.
    """

    def __init__(self, operator: Operator):
        self.operator = operator

    def get_id(self):
        """Return operator ID as required by Flask-Login."""
        return str(self.operator.id)

    @property
    def id(self):
        return self.operator.id

    @property
    def name(self):
        return self.operator.name


def create_operator(name: str, token: Optional[str] = None) -> Tuple[Operator, str]:
    """
    Create an operator and its API token.

    Args:
        name: Operator name
        token: Token to use (default: a new random token)

    Returns:
        Tuple of (operator, plain text token); the token cannot be recovered later
    """
    token = token or secrets.token_urlsafe(32)
    operator = Operator(
        name=name,
        token_prefix=token[:TOKEN_PREFIX_LENGTH],
        token_hash=hash_token(token)
    )
    db.session.add(operator)
    db.session.commit()
    return operator, token


def load_operator_from_token(token: str) -> Optional[OperatorUser]:
    if not token:
        return None
    candidates = Operator.query.filter_by(token_prefix=token[:TOKEN_PREFIX_LENGTH]).all()
    for operator in candidates:
        if verify_token(operator.token_hash, token):
            return OperatorUser(operator)
    return None


def load_operator_from_request(request) -> Optional[OperatorUser]:
    """Flask-Login request loader: authenticate the Bearer token of a request."""
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer':
        return None
    return load_operator_from_token(token.strip())


def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


def ensure_bootstrap_operator(app):
    """
    Create the bootstrap operator from BOOTSTRAP_API_TOKEN if it does not exist.

    Must be called inside an application context.
    """
    token = app.config.get('BOOTSTRAP_API_TOKEN')
    if not token:
        return None

    is_valid, error = validate_token_strength(token)
    if not is_valid:
        app.logger.error(f"Ignoring BOOTSTRAP_API_TOKEN: {error}")
        return None

    existing = load_operator_from_token(token)
    if existing:
        return existing.operator

    name = 'bootstrap'
    if Operator.query.filter_by(name=name).first():
        app.logger.warning("Bootstrap operator exists with a different token; leaving it unchanged")
        return None

    operator, _ = create_operator(name, token)
    app.logger.info("Bootstrap operator created")
    return operator
