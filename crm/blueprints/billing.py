"""Billing blueprint — /billing/*

JSON endpoints for the signed-in user's default workspace.

Routes:
- GET    /billing/product-prices/<product>  — current price per interval
- GET    /billing/subscription              — current subscription + items
- POST   /billing/checkout                  — create Checkout Session, return its URL
- POST   /billing/portal                    — create Customer Portal Session, return its URL
- DELETE /billing/subscription              — cancel the subscription in Stripe, drop local row
"""

import logging

import stripe
from flask import Blueprint, g, jsonify, request
from flask_login import current_user

from crm.decorators import workspace_member_required
from crm.extensions import db, limiter
from crm.services.billing_service import (
    BillingError,
    SubscriptionNotFound,
    get_billing_service,
)

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


@billing_bp.errorhandler(SubscriptionNotFound)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@billing_bp.errorhandler(stripe.StripeError)
def handle_stripe_error(e):
    logger.error(f"Stripe error: {e}", exc_info=True)
    return jsonify({"error": "Billing provider error, please try again."}), 502


@billing_bp.errorhandler(BillingError)
def handle_billing_error(e):
    logger.error(f"Billing error: {e}", exc_info=True)
    return jsonify({"error": "Something went wrong with billing."}), 500


# ──────────────────────────────────────────────
# GET /billing/product-prices/<product>
# ──────────────────────────────────────────────

@billing_bp.route("/product-prices/<product>")
@workspace_member_required
def product_prices(product):
    """Latest price per billing interval for a product, cheapest first."""
    billing_service = get_billing_service()
    try:
        stripe_product_id = billing_service.get_product_stripe_id(product)
    except ValueError:
        return jsonify({"error": f"Unknown product {product}"}), 404

    prices = billing_service.get_product_prices(stripe_product_id)
    return jsonify({
        "product": product,
        "prices": [price.to_dict() for price in prices],
    })


# ──────────────────────────────────────────────
# GET /billing/subscription
# ──────────────────────────────────────────────

@billing_bp.route("/subscription")
@workspace_member_required
def current_subscription():
    subscription = get_billing_service().get_current_billing_subscription(
        workspace_id=g.workspace_id
    )
    return jsonify({
        "subscription": subscription.to_dict() if subscription else None,
    })


# ──────────────────────────────────────────────
# POST /billing/checkout
# ──────────────────────────────────────────────

@billing_bp.route("/checkout", methods=["POST"])
@limiter.limit("10 per minute")
@workspace_member_required
def checkout():
    """Create a Stripe Checkout Session and return its URL.

    Body: {"price_id": "...", "success_url_path": "/settings/billing"}
    """
    data = request.get_json(silent=True) or {}
    price_id = data.get("price_id")
    if not price_id:
        return jsonify({"error": "price_id is required"}), 400

    url = get_billing_service().compute_checkout_session_url(
        current_user,
        price_id,
        data.get("success_url_path"),
    )
    return jsonify({"url": url})


# ──────────────────────────────────────────────
# POST /billing/portal
# ──────────────────────────────────────────────

@billing_bp.route("/portal", methods=["POST"])
@workspace_member_required
def customer_portal():
    """Create a Stripe Customer Portal Session and return its URL.

    Only available once the workspace has checked out at least once.
    """
    data = request.get_json(silent=True) or {}
    url = get_billing_service().compute_billing_portal_session_url(
        g.workspace_id,
        data.get("return_url_path"),
    )
    return jsonify({"url": url})


# ──────────────────────────────────────────────
# DELETE /billing/subscription
# ──────────────────────────────────────────────

@billing_bp.route("/subscription", methods=["DELETE"])
@workspace_member_required
def cancel_subscription():
    """Cancel the workspace subscription in Stripe, then drop the local row."""
    get_billing_service().delete_subscription(g.workspace_id)
    db.session.commit()
    return "", 204
