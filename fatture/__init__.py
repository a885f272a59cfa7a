"""
Pacchetto principale dell'applicazione Flask per l'import delle fatture elettroniche.
"""

from flask import Flask, jsonify

from config import DevConfig
from .extensions import init_extensions


def create_app(config_class=DevConfig) -> Flask:
    app = Flask(
        __name__,
        instance_relative_config=True,
        template_folder="templates",
    )
    app.config.from_object(config_class)
    init_extensions(app)

    from .web.template_filters import register_template_filters
    register_template_filters(app)

    _register_blueprints(app)

    app.logger.info("Applicazione Flask inizializzata.")

    @app.route("/health")
    def healthcheck():
        return jsonify({"status": "ok"}), 200

    return app


def _register_blueprints(app: Flask) -> None:
    from .api import api_invoices_bp

    app.register_blueprint(api_invoices_bp, url_prefix="/api/invoices")
