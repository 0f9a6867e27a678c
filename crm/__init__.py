from __future__ import annotations

import logging

import click
from flask import Flask, jsonify, redirect, url_for
from flask_login import login_required
from sqlalchemy import func

from crm.core.auth import auth_bp
from crm.core.config import Config
from crm.core.extensions import db, login_manager, migrate
from crm.core.models import Montage, User, seed_demo_data
from crm.montage import montage_bp
from crm.montage.errors import ChecklistItemNotFound, MontageError, MontageNotFound


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(montage_bp)

    register_cli(app)
    register_routes(app)
    register_error_handlers(app)
    return app


def register_routes(app: Flask) -> None:
    @app.get("/")
    def home():
        return redirect(url_for("montage.montage_list"))

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.get("/dashboard")
    @login_required
    def dashboard():
        rows = db.session.query(Montage.status, func.count(Montage.id)).group_by(Montage.status).all()
        return jsonify({status: count for status, count in rows})


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MontageError)
    def montage_error(error: MontageError):
        status = 404 if isinstance(error, (MontageNotFound, ChecklistItemNotFound)) else 400
        return jsonify({"error": error.code, "message": str(error)}), status

    @app.errorhandler(ValueError)
    def validation_error(error: ValueError):
        return jsonify({"error": "validation_error", "message": str(error)}), 400

    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"error": "unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"error": "forbidden"}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "not_found"}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo users, a customer and two montages."""
        if reset:
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")

    @app.cli.command("montage-status")
    @click.argument("display_id")
    @click.argument("status")
    @click.option("--user-email", default=None, help="Account recorded as the actor in the audit log.")
    def montage_status(display_id: str, status: str, user_email: str | None) -> None:
        """Move a montage to STATUS through the transition gates."""
        from crm.montage.services import update_montage_status

        montage = Montage.query.filter_by(display_id=display_id).first()
        if not montage:
            raise click.ClickException(f"Montage {display_id} not found")
        user = User.query.filter_by(email=user_email.lower()).first() if user_email else None
        try:
            outcome = update_montage_status(montage.id, status, user.id if user else None)
        except MontageError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"[{display_id}] {outcome.previous_status} -> {outcome.status}")

    @app.cli.command("montage-statuses")
    def montage_statuses() -> None:
        """Print the configured status catalogue."""
        from crm.montage.catalog import load_workflow_config

        config = load_workflow_config()
        for status in config.statuses:
            step = config.step_for_status(status.id)
            docs = ",".join(step.required_documents) if step and step.required_documents else "-"
            click.echo(f"{status.order:>3} {status.id:<28} {status.group:<8} docs={docs} {status.label}")


@login_manager.unauthorized_handler
def unauthorized_json():
    return jsonify({"error": "unauthorized"}), 401


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
