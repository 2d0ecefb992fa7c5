import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from crm.config import config_by_name
from crm.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from crm import models  # noqa: F401

    # --- Register blueprints ---
    from crm.blueprints.auth import auth_bp
    from crm.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(webhooks_bp)

    if app.config["IS_BILLING_ENABLED"]:
        from crm.blueprints.billing import billing_bp
        app.register_blueprint(billing_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-workspace")
    @click.option("--email", default="owner@crm.local", help="Owner email")
    @click.option("--password", default="owner123", help="Owner password")
    @click.option("--name", default="Demo Workspace", help="Workspace display name")
    def seed_workspace(email, password, name):
        """Create a workspace with an owner whose default workspace it is.

        Usage:
            flask seed-workspace
            flask seed-workspace --email me@example.com --password s3cret
        """
        from crm.models.user import User
        from crm.models.workspace import Workspace, WorkspaceMember

        if User.query.filter_by(email=email).first():
            click.echo(f"User already exists: {email}")
            return

        workspace = Workspace(display_name=name)
        db.session.add(workspace)
        db.session.flush()

        user = User(
            email=email,
            password_hash=generate_password_hash(password),
            first_name="Workspace",
            last_name="Owner",
            default_workspace_id=workspace.id,
        )
        db.session.add(user)
        db.session.flush()

        db.session.add(WorkspaceMember(
            user_id=user.id,
            workspace_id=workspace.id,
            role="owner",
        ))
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Owner:     {email} / {password}")
        click.echo(f"  Workspace: {workspace.display_name} (id: {workspace.id})")
        click.echo("=" * 60)

    @app.cli.command("show-prices")
    @click.option("--product", default="base-plan", help="Product name")
    def show_prices(product):
        """Show the currently sellable Stripe price per billing interval.

        Uses STRIPE_SECRET_KEY and BILLING_STRIPE_BASE_PLAN_PRODUCT_ID from env.
        """
        import stripe

        from crm.services.billing_service import get_billing_service

        if not app.config.get("STRIPE_SECRET_KEY"):
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return

        billing_service = get_billing_service()
        try:
            stripe_product_id = billing_service.get_product_stripe_id(product)
        except ValueError:
            click.echo(f"ERROR: unknown product {product}")
            return
        if not stripe_product_id:
            click.echo(f"ERROR: no Stripe product id configured for {product}")
            return

        try:
            prices = billing_service.get_product_prices(stripe_product_id)
        except stripe.StripeError as e:
            click.echo(f"ERROR: {e}")
            return

        click.echo(f"{product} ({stripe_product_id}):")
        if not prices:
            click.echo("  (no recurring prices)")
        for price in prices:
            click.echo(
                f"  {price.recurring_interval:<6} {price.unit_amount / 100:>8.2f}  "
                f"{price.stripe_price_id}"
            )
