import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from app.config import config_by_name
from app.extensions import db, migrate, login_manager, csrf, limiter
from app.services.event_bus import SyncEventBus


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

    # --- One sync bus per app, shared by every engine built in a request ---
    app.extensions["sync_bus"] = SyncEventBus()

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.auth import auth_bp
    from app.blueprints.api import api_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)

    # --- Root route ---
    @app.route("/")
    def index():
        return jsonify(ok=True, service="estate-crm")

    # --- Error handlers ---
    @app.errorhandler(403)
    def forbidden(e):
        return jsonify(ok=False, error="Forbidden."), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify(ok=False, error="Not found."), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(ok=False, error="Internal server error."), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to load
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
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

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@estate.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create an admin agent plus a demo owner lead and listing.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from app.models.user import User
        from app.services.automation import AutomationEngine

        # --- 1. Admin user ---
        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Admin user already exists: {email}")
            admin = existing
        else:
            admin = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Admin",
                is_admin=True,
            )
            db.session.add(admin)
            db.session.commit()
            click.echo(f"Created admin user: {email}")

        engine = AutomationEngine(
            bus=app.extensions["sync_bus"],
            config=app.config,
            actor_provider=lambda: (admin.id, True),
        )

        # --- 2. Demo owner lead (runs the normal create flow) ---
        owner, was_duplicate = engine.create_lead({
            "name": "Omar Demo",
            "email": "omar.demo@example.com",
            "phone": "+971500000000",
            "segment": "residential",
            "interest_tags": ["Seller"],
            "budget_sale_band": "AED2M – AED5M",
            "notes": "Demo owner for testing.",
        })

        # --- 3. Demo listing owned by that lead ---
        prop = None
        if not was_duplicate:
            prop = engine.create_property({
                "title": "Demo 2BR Marina Apartment",
                "price": 2_500_000,
                "offer_type": "sale",
                "segment": "residential",
                "bedrooms": 2,
                "city": "Dubai",
                "owner_contact_id": owner.id,
            })

        click.echo("")
        click.echo("=" * 60)
        click.echo("Seed data created successfully!")
        click.echo("=" * 60)
        click.echo(f"  Admin:     {email} / {password}")
        click.echo(f"  Lead:      {owner.name} (id: {owner.id}{', existing' if was_duplicate else ''})")
        if prop is not None:
            click.echo(f"  Property:  {prop.title} (id: {prop.id})")
        click.echo("=" * 60)

    @app.cli.command("sync-contacts")
    def sync_contacts():
        """Re-sync every lead to its contact record.

        Usage:
            flask sync-contacts
        """
        from app.services.automation import AutomationEngine

        engine = AutomationEngine(
            bus=app.extensions["sync_bus"],
            config=app.config,
            actor_provider=lambda: (None, True),
        )
        result = engine.bulk_sync_contacts()
        click.echo(f"Synced {result['processed']} contact(s), {result['errors']} error(s).")
