"""
Fetch a resource with an access grant.

The outcome is a tagged result rather than an exception so callers can tell
an expected denial (the owner refused, the grant does not cover the resource)
from a genuine fault (network, server error, malformed discovery).
"""
import json
import base64
import logging
from dataclasses import dataclass

import requests

from utils.uma import parse_www_authenticate, uma_configuration, UmaError, UMA_TICKET_GRANT

logging.basicConfig(level=logging.INFO)

CLAIM_TOKEN_FORMAT = "https://www.w3.org/TR/vc-data-model/#json-ld"
VP_CONTEXT = ["https://www.w3.org/2018/credentials/v1"]


@dataclass(frozen=True)
class Fetched:
    content: str
    content_type: str = None
    kind = "fetched"


@dataclass(frozen=True)
class Denied:
    reason: str
    kind = "denied"


@dataclass(frozen=True)
class Fault:
    error: Exception
    kind = "fault"


def claim_token(grant) -> str:
    """The grant wrapped in a VP, base64 encoded as the UMA claim token."""
    presentation = {
        "@context": VP_CONTEXT,
        "type": "VerifiablePresentation",
        "verifiableCredential": [grant.vc],
    }
    return base64.b64encode(json.dumps(presentation).encode()).decode()


def _content(r):
    return Fetched(content=r.text, content_type=r.headers.get("Content-Type"))


def _exchange_ticket(challenge, grant, session):
    token_endpoint = uma_configuration(challenge["as_uri"], session.timeout).get("token_endpoint")
    if not token_endpoint:
        raise UmaError("UMA configuration has no token_endpoint")
    data = {
        "grant_type": UMA_TICKET_GRANT,
        "ticket": challenge.get("ticket", ""),
        "claim_token": claim_token(grant),
        "claim_token_format": CLAIM_TOKEN_FORMAT,
    }
    return session.fetch("POST", token_endpoint, data=data)


def get_file(resource, grant, session):
    """
    Returns Fetched, Denied or Fault. No request is sent unless the grant is
    granted, not expired and names `resource`.
    """
    if not grant.is_granted:
        return Denied(f"access to {resource} was not granted")
    if grant.is_expired():
        return Denied(f"access grant {grant.id} is expired")
    if not grant.covers(resource):
        return Denied(f"access grant {grant.id} does not cover {resource}")

    try:
        r = requests.get(resource, timeout=session.timeout)
        if r.ok:
            logging.info("%s is public", resource)
            return _content(r)
        if r.status_code == 403:
            return Denied(f"{resource} returned HTTP 403")
        if r.status_code != 401:
            return Fault(RuntimeError(f"{resource} returned HTTP {r.status_code}"))

        challenge = parse_www_authenticate(r.headers.get("WWW-Authenticate", ""))
        token_response = _exchange_ticket(challenge, grant, session)
        if token_response.status_code in (400, 401, 403):
            logging.info("UMA token refused %s: %s", token_response.status_code, token_response.text)
            return Denied(f"authorization server refused the grant (HTTP {token_response.status_code})")
        if not token_response.ok:
            return Fault(RuntimeError(f"UMA token endpoint returned HTTP {token_response.status_code}"))
        access_token = token_response.json().get("access_token")
        if not access_token:
            return Fault(RuntimeError("UMA token response has no access_token"))

        r = requests.get(resource, headers={"Authorization": f"Bearer {access_token}"}, timeout=session.timeout)
    except (requests.RequestException, UmaError, ValueError) as e:
        return Fault(e)

    if r.ok:
        return _content(r)
    if r.status_code in (401, 403):
        return Denied(f"{resource} refused the grant (HTTP {r.status_code})")
    return Fault(RuntimeError(f"{resource} returned HTTP {r.status_code}"))
