import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

# Carrega variaveis de ambiente de .env (desenvolvimento local)
load_dotenv()

from config import Config
from models.database import init_db
from models.extensions import db

from routes.agents_routes import agents_bp
from routes.billing_routes import billing_bp
from routes.commands_routes import commands_bp
from routes.intents_routes import intents_bp
from routes.renewals_routes import renewals_bp
from routes.subscriptions_routes import subscriptions_bp
from routes.webhooks_routes import webhooks_bp

from services.container import EXTENSION_KEY, build_services
from services.errors import RecompraError
from services.permissions import json_error, load_user_from_request

logger = logging.getLogger(__name__)


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)


def create_app(config_object=Config, **service_overrides):
    """Fabrica da aplicacao.

    service_overrides e repassado para build_services (processor, agent_client,
    extractor, session_manager) e permite trocar colaboradores externos.
    """
    app = Flask(__name__)
    app.config.from_object(config_object)
    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    # DB
    init_db(app)

    # Login manager: autenticacao e externa, aqui so resolvemos o token
    login_manager = LoginManager()
    login_manager.init_app(app)
    login_manager.request_loader(load_user_from_request)

    @login_manager.unauthorized_handler
    def unauthorized():
        return json_error("not_authenticated", 401)

    app.extensions[EXTENSION_KEY] = build_services(app.config, **service_overrides)

    @app.errorhandler(RecompraError)
    def handle_domain_error(exc: RecompraError):
        db.session.rollback()
        if exc.status >= 500:
            logger.warning("Erro de dominio: %s", exc, exc_info=True)
        return jsonify(exc.to_payload()), exc.status

    # Blueprints
    app.register_blueprint(intents_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(agents_bp)
    app.register_blueprint(renewals_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(commands_bp)

    @app.get("/healthz")
    def healthz():
        try:
            db.session.execute(text("SELECT 1"))
        except OperationalError:
            db.session.rollback()
            logger.warning("Healthz: banco indisponivel", exc_info=True)
            return jsonify({"ok": False, "database": "unavailable"}), 503
        return jsonify({"ok": True, "env": app.config.get("APP_ENV")})

    return app


if __name__ == "__main__":
    create_app().run(debug=Config.DEBUG)
