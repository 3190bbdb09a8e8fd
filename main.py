import os
import logging
from datetime import datetime, timedelta, timezone

from flask import Flask, render_template
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import env
from routes import access
from utils.solid_session import LoginError
from utils.access_grants import AccessGrantError, AccessGrantInvalid, AccessRequestExpired


def create_app(config: env.AppConfig = None) -> Flask:
    """Application factory: configure, wire dependencies, register routes."""
    app = Flask(__name__, static_folder="static", static_url_path="/static")

    @app.get("/ping")
    def ping():
        return "pong"

    # ---- Logging (basic) ----
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    # ---- Configuration, loaded once and read-only afterwards ----
    mode = config or env.AppConfig.from_env()
    app.config["MODE"] = mode
    # computed once per process, every access request shares it
    app.config["EXPIRATION_DATE"] = datetime.now(timezone.utc) + timedelta(seconds=mode.request_life)
    app.jinja_env.globals["Version"] = os.getenv("APP_VERSION", "0.1")
    logging.info(
        "requestor %s at %s, issuer %s, callback %s",
        mode.client_id, mode.app_url, mode.oidc_issuer, mode.redirect_url,
    )

    if mode.behind_proxy:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    # ---- Register routes ----
    access.init_app(app)

    # ---- Error handlers ----
    def error_page(title, description, status):
        return render_template("error.html", title=title, description=description, status=status), status

    @app.errorhandler(LoginError)
    def login_error(e):
        logging.error("requestor login failed: %s", e)
        return error_page("Login failed", str(e), 502)

    @app.errorhandler(AccessGrantInvalid)
    def access_grant_invalid(e):
        logging.warning("invalid access grant: %s", e)
        return error_page("Invalid access grant", str(e), 400)

    @app.errorhandler(AccessRequestExpired)
    def access_request_expired(e):
        # EXPIRATION_DATE is fixed at startup, only a restart renews it
        logging.error("access request expiration passed, restart the server: %s", e)
        return error_page("Access request expiration passed", str(e), 503)

    @app.errorhandler(AccessGrantError)
    def access_grant_error(e):
        logging.error("access grant service error: %s", e)
        return error_page("Access grant service error", str(e), 502)

    @app.errorhandler(HTTPException)
    def http_error(e):
        logging.warning("%s %s", e.code, e.description)
        return error_page(e.name, e.description, e.code)

    @app.errorhandler(500)
    def error_500(e):
        logging.exception("unhandled error: %s", getattr(e, "original_exception", e))
        return error_page("Internal Server Error", "The request could not be completed.", 500)

    return app


# ---- Dev entrypoint: `python main.py` ----
if __name__ == "__main__":
    app = create_app()
    mode = app.config["MODE"]
    logging.info("Listening on [%s]...", mode.port)
    app.run(host=mode.host, port=mode.port, debug=os.getenv("FLASK_DEBUG", "0") == "1", threaded=True)
