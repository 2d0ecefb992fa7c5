"""
Custom route decorators for access control.

- workspace_member_required: ensures the user is logged in AND is a member
  of their default workspace. Sets g.workspace_id for the view.
"""

from functools import wraps

from flask import abort, g
from flask_login import current_user, login_required

from crm.services.workspace_service import is_workspace_member


def workspace_member_required(f):
    """Require login + membership of the user's default workspace."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        workspace_id = current_user.default_workspace_id
        if workspace_id is None:
            abort(404)

        if not is_workspace_member(current_user.id, workspace_id):
            abort(403)

        g.workspace_id = workspace_id
        return f(*args, **kwargs)

    return decorated
