"""Billing models.

- BillingSubscription: a workspace's Stripe subscription, mirrored from
  webhooks. At most one row per workspace may be in a non-canceled status.
- BillingSubscriptionItem: one purchased product/price line of a
  subscription, unique per (subscription, product).
"""

import uuid

from crm.extensions import db


class BillingSubscription(db.Model):
    __tablename__ = "billing_subscriptions"

    # -- Valid statuses (synced from Stripe) --
    STATUSES = [
        "incomplete",
        "incomplete_expired",
        "trialing",
        "active",
        "past_due",
        "unpaid",
        "canceled",
        "paused",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id = db.Column(
        db.String(36), db.ForeignKey("workspaces.id"), nullable=False
    )
    stripe_customer_id = db.Column(db.String(255), nullable=False)
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    status = db.Column(db.String(50), nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_billing_subscriptions_workspace_status", "workspace_id", "status"),
        db.Index("ix_billing_subscriptions_stripe_customer_id", "stripe_customer_id"),
    )

    # --- Relationships ---
    workspace = db.relationship(
        "Workspace", back_populates="billing_subscriptions"
    )
    items = db.relationship(
        "BillingSubscriptionItem",
        back_populates="billing_subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<BillingSubscription {self.stripe_subscription_id} ({self.status})>"


class BillingSubscriptionItem(db.Model):
    __tablename__ = "billing_subscription_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    billing_subscription_id = db.Column(
        db.String(36),
        db.ForeignKey("billing_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    stripe_product_id = db.Column(db.String(255), nullable=False)
    stripe_price_id = db.Column(db.String(255), nullable=False)
    stripe_subscription_item_id = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "billing_subscription_id",
            "stripe_product_id",
            name="uq_billing_subscription_item_product",
        ),
    )

    # --- Relationships ---
    billing_subscription = db.relationship(
        "BillingSubscription", back_populates="items"
    )

    def to_dict(self):
        return {
            "stripe_product_id": self.stripe_product_id,
            "stripe_price_id": self.stripe_price_id,
            "stripe_subscription_item_id": self.stripe_subscription_item_id,
            "quantity": self.quantity,
        }

    def __repr__(self):
        return f"<BillingSubscriptionItem {self.stripe_product_id} x{self.quantity}>"
