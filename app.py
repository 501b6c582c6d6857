import logging
import os
from pathlib import Path

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, send_from_directory
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.security import generate_password_hash

from attachments import AttachmentError, MalformedAttachmentError
from auth import auth_bp, cleanup_expired_tokens, login_manager
from blob_store import BlobStore
from models import Category, Expense, Note, db, seed_categories
from recurring import DatabaseTransactionSource, JsonMarkerStore, RecurringMaterializer
from routes import categories_bp, expenses_bp, health_bp, notes_bp, uploads_bp

load_dotenv()


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    # ==============================
    # CONFIG
    # ==============================
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "replace_with_a_long_random_string"),
        SQLALCHEMY_DATABASE_URI=os.environ.get(
            "DATABASE_URL", "sqlite:///" + os.path.join(app.instance_path, "budget.db")),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        UPLOADS_ROOT=os.environ.get("UPLOADS_ROOT", os.path.join(app.instance_path, "uploads")),
        PIN_CODE=os.environ.get("PIN_CODE"),
        TOKEN_VALIDITY_DAYS=int(os.environ.get("TOKEN_VALIDITY_DAYS", "30")),
        UPLOAD_MAX_SIZE=int(os.environ.get("UPLOAD_MAX_SIZE", "104857600")),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
    )
    if test_config:
        app.config.update(test_config)
    app.config["MAX_CONTENT_LENGTH"] = app.config["UPLOAD_MAX_SIZE"]
    app.config["PIN_HASH"] = (generate_password_hash(str(app.config["PIN_CODE"]))
                              if app.config["PIN_CODE"] else None)

    logging.basicConfig(level=app.config["LOG_LEVEL"],
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # ==============================
    # EXTENSIONS
    # ==============================
    db.init_app(app)
    login_manager.init_app(app)
    store = BlobStore(app.config["UPLOADS_ROOT"])
    store.root.mkdir(parents=True, exist_ok=True)
    app.extensions["blob_store"] = store

    for bp in (auth_bp, categories_bp, expenses_bp, notes_bp, uploads_bp, health_bp):
        app.register_blueprint(bp)

    @app.get("/uploads/<path:filename>")
    def uploaded_file(filename):
        return send_from_directory(app.config["UPLOADS_ROOT"], filename)

    register_error_handlers(app)
    register_commands(app)

    with app.app_context():
        db.create_all()
    return app


# ==============================
# ERRORS
# ==============================
def register_error_handlers(app):
    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e):
        limit_mb = round(app.config["UPLOAD_MAX_SIZE"] / 1024 / 1024)
        return jsonify({"error": f"File too large. Maximum size is {limit_mb} MB"}), 413

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(AttachmentError)
    def attachment_error(e):
        if isinstance(e, MalformedAttachmentError):
            app.logger.warning("Rejected note attachments: %s", e)
            return jsonify({"error": str(e)}), 400
        app.logger.error("Attachment synchronization failed: %s", e)
        return jsonify({"error": "Failed to save note attachments", "message": str(e)}), 500

    @app.errorhandler(Exception)
    def unexpected_error(e):
        app.logger.exception("Unhandled error: %s", e)
        return jsonify({"error": "Something went wrong!", "message": str(e)}), 500


# ==============================
# CLI COMMANDS
# ==============================
def register_commands(app):
    @app.cli.command("init-db")
    @click.option("--seed", is_flag=True, help="Add the default categories to an empty database.")
    def init_db(seed):
        db.create_all()
        click.echo("Database initialized!")
        if seed:
            click.echo(f"Seeded {seed_categories()} categories.")

    @app.cli.command("inspect-db")
    def inspect_db():
        click.echo("Categories in DB:")
        for c in Category.query.order_by(Category.name).all():
            click.echo(f"- {c.id} | {c.name} | budget {c.budget:.2f} | active={c.is_active} show={c.show}")

        click.echo("\nExpenses in DB:")
        for e in Expense.query.order_by(Expense.date.desc()).all():
            flag = " (recurring)" if e.is_recurring else ""
            click.echo(f"- {e.id} | {e.date} | {e.type} | {e.title} | {e.amount:.2f}{flag}")

        click.echo("\nNotes in DB:")
        for n in Note.query.order_by(Note.id).all():
            click.echo(f"- {n.id} | updated {n.updated_at} | {len(n.content)} chars")

    @app.cli.command("cleanup")
    @click.option("--temp-max-age-hours", default=24.0, show_default=True,
                  help="Remove staged uploads older than this.")
    def cleanup(temp_max_age_hours):
        tokens = cleanup_expired_tokens()
        removed = app.extensions["blob_store"].sweep_temp(temp_max_age_hours * 3600)
        click.echo(f"Removed {tokens} expired tokens and {len(removed)} stale uploads.")

    @app.cli.command("recurring")
    @click.option("--yes", "answer", flag_value="yes", help="Accept the offer without asking.")
    @click.option("--no", "answer", flag_value="no", help="Skip the offer without asking.")
    @click.option("--marker-file", default=None, help="Where the monthly marker is kept.")
    def recurring(answer, marker_file):
        markers = JsonMarkerStore(marker_file or os.path.join(app.instance_path, "markers.json"))
        materializer = RecurringMaterializer(DatabaseTransactionSource(), markers)

        def decide(offer):
            click.echo(f"Recurring transactions from last month ({len(offer.transactions)}):")
            for t in offer.transactions:
                click.echo(f"- {t['date']} | {t['title']} | {t['amount']:.2f}")
            if answer:
                return answer == "yes"
            return click.confirm(f"Create them for {offer.month}?", default=True)

        result = materializer.run(decide)
        if result is None:
            click.echo("Nothing to do.")
            return
        click.echo(f"Created {len(result.created)} transactions.")
        for failure in result.failed:
            click.echo(f"Failed: {failure['transaction'].get('title')}: {failure['error']}", err=True)


if __name__ == "__main__":
    create_app().run(debug=True)
