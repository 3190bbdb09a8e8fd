# UMA 2.0 helpers (WWW-Authenticate challenge, discovery)
import re

import requests

UMA_SCHEME = "UMA"
UMA_TICKET_GRANT = "urn:ietf:params:oauth:grant-type:uma-ticket"

_PARAM = re.compile(r'([A-Za-z_]+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')


class UmaError(Exception):
    pass


def parse_www_authenticate(header: str) -> dict:
    """
    Parse an UMA challenge such as
    `UMA realm="x", as_uri="https://as.example", ticket="abc"`.
    Challenges using another scheme are ignored.
    """
    if not header:
        raise UmaError("No WWW-Authenticate header")
    for challenge in re.split(r',\s*(?=[A-Za-z]+\s+[A-Za-z_]+\s*=)', header):
        scheme, _, params = challenge.strip().partition(" ")
        if scheme.upper() != UMA_SCHEME:
            continue
        parsed = {m.group(1): m.group(2) if m.group(2) is not None else m.group(3)
                  for m in _PARAM.finditer(params)}
        if "as_uri" not in parsed:
            raise UmaError("UMA challenge without as_uri")
        return parsed
    raise UmaError(f"Not an UMA challenge: {header}")


def uma_configuration(as_uri, timeout=10) -> dict:
    url = as_uri.rstrip("/") + "/.well-known/uma2-configuration"
    try:
        r = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise UmaError(f"UMA server {as_uri} unreachable: {e}") from e
    if not r.ok:
        raise UmaError(f"UMA configuration at {url} returned HTTP {r.status_code}")
    try:
        return r.json()
    except ValueError as e:
        raise UmaError(f"UMA configuration at {url} is not JSON") from e
