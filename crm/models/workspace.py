"""Workspace models.

- Workspace: the tenant container owning its data and its subscription.
- WorkspaceMember: join table linking users to workspaces.
"""

import uuid

from crm.extensions import db


class Workspace(db.Model):
    __tablename__ = "workspaces"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    display_name = db.Column(db.String(255), nullable=False)
    # Mirror of the latest Stripe subscription status, written by the
    # billing webhooks. Read by the front end for gating/banners.
    subscription_status = db.Column(
        db.String(50), nullable=True, default="incomplete"
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    members = db.relationship(
        "WorkspaceMember", back_populates="workspace", lazy="dynamic"
    )
    billing_subscriptions = db.relationship(
        "BillingSubscription", back_populates="workspace", lazy="dynamic"
    )

    def __repr__(self):
        return f"<Workspace {self.display_name} ({self.subscription_status})>"


class WorkspaceMember(db.Model):
    __tablename__ = "workspace_members"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id"), nullable=False
    )
    role = db.Column(db.String(50), default="owner")  # owner | member
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "workspace_id", name="uq_user_workspace"
        ),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="workspace_memberships")
    workspace = db.relationship("Workspace", back_populates="members")

    def __repr__(self):
        return f"<WorkspaceMember user={self.user_id} workspace={self.workspace_id}>"
