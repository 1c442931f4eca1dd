# ballotbox/authentication/rbac.py

import hmac
from enum import Enum
from functools import wraps
from flask import current_app, jsonify
from flask_jwt_extended import create_access_token, get_jwt, verify_jwt_in_request

# Role gate: voters hold a per-voter token, admins a token obtained with the
# shared admin password.


class UserRole(Enum):
    VOTER = "voter"
    ADMIN = "admin"


def check_admin_credentials(username, password):
    expected_user = current_app.config.get('ADMIN_USERNAME') or ''
    expected_password = current_app.config.get('ADMIN_PASSWORD') or ''
    if not expected_password or not isinstance(username, str) or not isinstance(password, str):
        return False
    # evaluate both so timing does not reveal which one failed
    user_ok = hmac.compare_digest(username.encode(), expected_user.encode())
    password_ok = hmac.compare_digest(password.encode(), expected_password.encode())
    return user_ok and password_ok


def issue_token(identity, role):
    return create_access_token(identity=str(identity), additional_claims={"role": role.value})


def current_role():
    return get_jwt().get("role")


def require_role(role):
    """Reject the request unless it carries a valid token for `role`."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            if current_role() != role.value:
                return jsonify({"error": "FORBIDDEN", "message": "Not allowed."}), 403
            return func(*args, **kwargs)
        return wrapper
    return decorator
