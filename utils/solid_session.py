"""
Client-credentials login of the requestor application against a Solid OIDC issuer.

The session keeps the access token in memory only. A new session is built for
every incoming HTTP request; sessions are not pooled or refreshed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta

import requests

from utils import tokens

logging.basicConfig(level=logging.INFO)

TOKEN_TYPES = ("DPoP", "Bearer")
LOGIN_SCOPE = "openid webid"


class LoginError(Exception):
    """The identity provider could not be reached or refused the login."""


@dataclass(frozen=True)
class SessionInfo:
    web_id: str
    client_id: str
    issuer: str
    token_type: str
    expires_at: datetime = None
    is_logged_in: bool = True


class Session:
    """Authenticated HTTP access on behalf of the requestor application."""

    def __init__(self, info: SessionInfo, access_token: str, dpop_key=None, timeout=10):
        self.info = info
        self._access_token = access_token
        self._dpop_key = dpop_key
        self.timeout = timeout

    def auth_headers(self, method, url) -> dict:
        if self.info.token_type == "DPoP":
            return {
                "Authorization": f"DPoP {self._access_token}",
                "DPoP": tokens.dpop_proof(self._dpop_key, method, url, self._access_token),
            }
        return {"Authorization": f"Bearer {self._access_token}"}

    def fetch(self, method, url, headers=None, **kwargs) -> requests.Response:
        all_headers = dict(headers or {})
        all_headers.update(self.auth_headers(method, url))
        kwargs.setdefault("timeout", self.timeout)
        return requests.request(method, url, headers=all_headers, **kwargs)


def _get_json(url, timeout, what):
    try:
        r = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise LoginError(f"{what} unreachable: {e}") from e
    if not r.ok:
        raise LoginError(f"{what} returned HTTP {r.status_code}")
    try:
        return r.json()
    except ValueError as e:
        raise LoginError(f"{what} is not JSON") from e


def openid_configuration(oidc_issuer, timeout=10) -> dict:
    url = oidc_issuer.rstrip("/") + "/.well-known/openid-configuration"
    config = _get_json(url, timeout, "OpenID configuration")
    if not config.get("token_endpoint"):
        raise LoginError("OpenID configuration has no token_endpoint")
    return config


def _web_id(token_response, jwks, client_id):
    # the WebID is carried by the id_token, some issuers only put it in the access token
    id_token = token_response.get("id_token")
    if id_token:
        try:
            claims = tokens.verify_jwt(id_token, jwks) if jwks else tokens.get_payload_from_token(id_token)
        except ValueError as e:
            raise LoginError(f"Invalid id_token: {e}") from e
        if claims.get("azp", client_id) != client_id and client_id not in _audience(claims):
            raise LoginError("id_token was not issued for this client")
        web_id = claims.get("webid") or claims.get("sub")
        if web_id and web_id.startswith("http"):
            return web_id
    access_token = token_response.get("access_token")
    if tokens.is_jwt(access_token):
        web_id = tokens.get_payload_from_token(access_token).get("webid")
        if web_id:
            return web_id
    raise LoginError("No WebID found in the token response")


def _audience(claims):
    aud = claims.get("aud", [])
    return aud if isinstance(aud, list) else [aud]


def login(client_id, client_secret, oidc_issuer, token_type="DPoP", timeout=10) -> Session:
    """
    Log the application in with the client_credentials grant.
    Raises LoginError; never returns an unauthenticated session.
    """
    if token_type not in TOKEN_TYPES:
        raise ValueError(f"token_type must be one of {TOKEN_TYPES}")
    if not (client_id and client_secret and oidc_issuer):
        raise LoginError("client_id, client_secret and oidc_issuer are required")

    config = openid_configuration(oidc_issuer, timeout)
    token_endpoint = config["token_endpoint"]
    jwks = _get_json(config["jwks_uri"], timeout, "JWKS") if config.get("jwks_uri") else None

    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    dpop_key = None
    if token_type == "DPoP":
        dpop_key = tokens.generate_dpop_key()
        headers["DPoP"] = tokens.dpop_proof(dpop_key, "POST", token_endpoint)

    data = {"grant_type": "client_credentials", "scope": LOGIN_SCOPE}
    try:
        r = requests.post(
            token_endpoint,
            data=data,
            headers=headers,
            auth=(client_id, client_secret),
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise LoginError(f"Token endpoint unreachable: {e}") from e
    if not r.ok:
        logging.error("token endpoint error %s: %s", r.status_code, r.text)
        raise LoginError(f"Login refused by {oidc_issuer} (HTTP {r.status_code})")
    try:
        token_response = r.json()
    except ValueError as e:
        raise LoginError("Token response is not JSON") from e

    access_token = token_response.get("access_token")
    if not access_token:
        raise LoginError("Token response has no access_token")

    expires_at = None
    if token_response.get("expires_in"):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(token_response["expires_in"]))

    info = SessionInfo(
        web_id=_web_id(token_response, jwks, client_id),
        client_id=client_id,
        issuer=oidc_issuer,
        token_type=token_type,
        expires_at=expires_at,
    )
    logging.info("logged in as %s (%s)", info.web_id, token_type)
    return Session(info, access_token, dpop_key=dpop_key, timeout=timeout)
