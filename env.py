import os
import logging
from dataclasses import dataclass, field
from urllib.parse import urljoin

from dotenv import load_dotenv

from utils.access_grants import GRANT_VC_URL_PARAM_NAME


logging.basicConfig(level=logging.INFO)

# endpoint the consent UI sends the user back to
REDIRECT_PATH = "/redirect"

DEFAULT_PORT = 3001
DEFAULT_REQUEST_LIFE = 1800
DEFAULT_HTTP_TIMEOUT = 10
DEFAULT_PURPOSES = (
    "https://w3c.github.io/dpv/dpv/#UserInterfacePersonalisation",
    "https://w3c.github.io/dpv/dpv/#OptimiseUserInterface",
)
DEFAULT_FALLBACK_UI = "https://podbrowser.inrupt.com/privacy/access/requests/"
DEFAULT_GRANT_PARAM = GRANT_VC_URL_PARAM_NAME
LEGACY_GRANT_PARAMS = ("signedVcUrl",)

REQUIRED = ("APP_URL", "REQUESTOR_CLIENT_ID", "REQUESTOR_CLIENT_SECRET", "REQUESTOR_OIDC_ISSUER")


class ConfigurationError(Exception):
    pass


def _int(environ, name, default):
    value = environ.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _list(environ, name, default):
    value = environ.get(name)
    if not value:
        return tuple(default)
    return tuple(v.strip() for v in value.split(",") if v.strip())


@dataclass(frozen=True)
class AppConfig:
    """
    Runtime configuration of the requestor application.
    Built once at startup and shared read-only by every request.
    """
    app_url: str
    client_id: str
    client_secret: str = field(repr=False)
    oidc_issuer: str
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    request_life: int = DEFAULT_REQUEST_LIFE
    purposes: tuple = DEFAULT_PURPOSES
    fallback_access_management_ui: str = DEFAULT_FALLBACK_UI
    grant_param_name: str = DEFAULT_GRANT_PARAM
    legacy_grant_param_names: tuple = LEGACY_GRANT_PARAMS
    vc_provider: str = None
    http_timeout: int = DEFAULT_HTTP_TIMEOUT
    behind_proxy: bool = False

    @property
    def redirect_url(self) -> str:
        return urljoin(self.app_url, REDIRECT_PATH)

    @property
    def grant_param_names(self) -> tuple:
        return (self.grant_param_name,) + tuple(
            n for n in self.legacy_grant_param_names if n != self.grant_param_name
        )

    @classmethod
    def from_env(cls, environ=None):
        """
        Load the configuration from the process environment.
        `.env` files are read first; variables already set take precedence.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        missing = [name for name in REQUIRED if not environ.get(name)]
        if missing:
            raise ConfigurationError("Missing environment variables: " + ", ".join(missing))

        return cls(
            app_url=environ["APP_URL"],
            client_id=environ["REQUESTOR_CLIENT_ID"],
            client_secret=environ["REQUESTOR_CLIENT_SECRET"],
            oidc_issuer=environ["REQUESTOR_OIDC_ISSUER"],
            port=_int(environ, "PORT", DEFAULT_PORT),
            host=environ.get("HOST", "0.0.0.0"),
            request_life=_int(environ, "ACCESS_REQUEST_LIFE", DEFAULT_REQUEST_LIFE),
            purposes=_list(environ, "ACCESS_REQUEST_PURPOSES", DEFAULT_PURPOSES),
            fallback_access_management_ui=environ.get("FALLBACK_ACCESS_MANAGEMENT_UI", DEFAULT_FALLBACK_UI),
            grant_param_name=environ.get("GRANT_VC_URL_PARAM_NAME", DEFAULT_GRANT_PARAM),
            legacy_grant_param_names=_list(environ, "LEGACY_GRANT_VC_URL_PARAM_NAMES", LEGACY_GRANT_PARAMS),
            vc_provider=environ.get("ACCESS_GRANT_PROVIDER") or None,
            http_timeout=_int(environ, "HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
            behind_proxy=environ.get("BEHIND_PROXY", "0") == "1",
        )
