"""Workspace service — membership and subscription-status helpers.

The billing reconciler writes the workspace's subscription_status through
update_subscription_status() and sizes checkouts with
count_workspace_members().
"""

import logging

from crm.extensions import db
from crm.models.workspace import Workspace, WorkspaceMember

logger = logging.getLogger(__name__)


def update_subscription_status(workspace_id, status):
    """Mirror a Stripe subscription status onto the workspace record.

    Uses flush() so the caller controls the commit boundary.
    """
    workspace = db.session.get(Workspace, workspace_id)
    if not workspace:
        logger.warning(f"No workspace {workspace_id} to update subscription status on")
        return

    workspace.subscription_status = status
    db.session.flush()


def count_workspace_members(workspace_id):
    """Number of users belonging to the workspace."""
    return WorkspaceMember.query.filter_by(workspace_id=workspace_id).count()


def is_workspace_member(user_id, workspace_id):
    return (
        WorkspaceMember.query.filter_by(
            user_id=user_id, workspace_id=workspace_id
        ).first()
        is not None
    )
