import os
import atexit
from flask import Flask, jsonify, session, g
from sqlalchemy import text
from config import Config
from models import User
from extensions import db, login_manager, init_extensions
from logger import configure_app_logging, app_logger
from settlement.clock import utcnow
from settlement.money import format_amount
from settlement.supervisor import Supervisor


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    # ------------------------------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------------------------------
    configure_app_logging(app)

    # ------------------------------------------------------------------------------------------
    # Initialize extensions
    # ------------------------------------------------------------------------------------------
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(app.instance_path, exist_ok=True)
    init_extensions(app)
    app.jinja_env.filters["money"] = format_amount

    # ------------------------------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------------------------------
    register_blueprints(app)

    # ------------------------------------------------------------------------------------------
    # Flask-Login user_loader
    # ------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return User.query.get(int(user_id))

    # ----------------------
    # Global before_request
    # ----------------------
    @app.before_request
    def load_logged_in_user():
        g.user = None
        user_id = session.get("user_id")
        if user_id:
            g.user = User.query.get(user_id)

    # ----------------------
    # Error responses
    # ----------------------
    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    # ----------------------
    # Health check
    # ----------------------
    @app.route("/healthz")
    def healthz():
        try:
            db.session.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            app.logger.error(f"Health check database error: {e}")
            database = "unavailable"
        supervisor = app.extensions.get("settlement_supervisor")
        return {
            "status": "ok" if database == "ok" else "degraded",
            "database": database,
            "scheduler_running": bool(supervisor and supervisor.running),
            "timestamp": utcnow().isoformat(),
        }, 200

    # ------------------------------------------------------------------------------------------
    # Settlement scheduler
    # ------------------------------------------------------------------------------------------
    supervisor = Supervisor(app)
    if app.config.get("SCHEDULER_ENABLED") and not app.testing:
        supervisor.start()
        atexit.register(supervisor.stop)
        app_logger.info("Settlement scheduler enabled")

    return app


def register_blueprints(app):
    from blueprints.withdrawals import bp as withdrawals_bp
    from blueprints.installments import bp as installments_bp
    from blueprints.admin import admin_bp

    app.register_blueprint(withdrawals_bp)
    app.register_blueprint(installments_bp)
    app.register_blueprint(admin_bp)


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port, use_reloader=False)
