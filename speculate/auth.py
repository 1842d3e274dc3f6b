"""
Identity loading.

Authentication happens upstream; the gateway forwards a stable user id in the
configured identity header. Users are provisioned locally on first sight.
"""

import logging
from functools import wraps

from flask import current_app, jsonify
from flask_login import current_user, login_required

from speculate import db
from speculate.errors import AuthorizationError

logger = logging.getLogger(__name__)


def register_identity_loader(login_manager):
    """Wire Flask-Login to the upstream identity header"""

    @login_manager.request_loader
    def load_user_from_request(request):
        from speculate.models import User

        external_id = request.headers.get(current_app.config["IDENTITY_HEADER"])
        if not external_id:
            return None

        external_id = external_id.strip()
        if not external_id:
            return None

        user = User.query.filter_by(external_id=external_id).first()
        if user is None:
            user = User(external_id=external_id)
            db.session.add(user)
            db.session.commit()
            logger.info(f"Provisioned user {user.id} for identity {external_id}")

        return user if user.is_active else None

    @login_manager.unauthorized_handler
    def unauthorized():
        return (
            jsonify({"error": "unauthenticated", "message": "Authentication required"}),
            401,
        )


def moderator_required(f):
    """Require an authenticated moderator or admin"""

    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not current_user.can_moderate:
            raise AuthorizationError("Moderator privileges required")
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    """Require an authenticated admin"""

    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            raise AuthorizationError("Admin privileges required")
        return f(*args, **kwargs)

    return decorated_function
