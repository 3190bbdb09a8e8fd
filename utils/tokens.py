# JOSE helpers shared by the session and the resource fetcher
import json
import base64
import hashlib
import uuid
from datetime import datetime, timezone
from urllib.parse import urlsplit, urlunsplit

from jwcrypto import jwk, jwt


def b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def get_payload_from_token(token) -> dict:
    payload = token.split('.')[1]
    payload += "=" * ((4 - len(payload) % 4) % 4)  # solve the padding issue of the base64 python lib
    try:
        return json.loads(base64.urlsafe_b64decode(payload).decode())
    except Exception as e:
        raise ValueError(f"Invalid token payload: {e}")


def get_header_from_token(token):
    header = token.split('.')[0]
    header += "=" * ((4 - len(header) % 4) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(header).decode())
    except Exception as e:
        raise ValueError(f"Invalid token header: {e}")


def is_jwt(token) -> bool:
    if not isinstance(token, str) or token.count('.') != 2:
        return False
    try:
        get_header_from_token(token)
    except ValueError:
        return False
    return True


def generate_dpop_key():
    return jwk.JWK.generate(kty='EC', crv='P-256')


def htu(url):
    """DPoP `htu` claim: the request URL without query and fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def dpop_proof(key, method, url, access_token=None):
    """
    Build a DPoP proof JWT (RFC 9449) for one HTTP request.
    `ath` is added when the proof accompanies an access token.
    """
    header = {
        "typ": "dpop+jwt",
        "alg": "ES256",
        "jwk": key.export_public(as_dict=True),
    }
    claims = {
        "htm": method.upper(),
        "htu": htu(url),
        "iat": int(datetime.now(timezone.utc).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if access_token:
        claims["ath"] = b64url(hashlib.sha256(access_token.encode()).digest())
    token = jwt.JWT(header=header, claims=claims)
    token.make_signed_token(key)
    return token.serialize()


def verify_jwt(token, jwks: dict) -> dict:
    """
    Check the signature of `token` against a JWK Set and return its claims.
    jwcrypto also rejects expired tokens (exp) and tokens not yet valid (nbf).
    """
    try:
        keyset = jwk.JWKSet.from_json(json.dumps(jwks))
        verified = jwt.JWT(key=keyset, jwt=token)
    except Exception as e:
        raise ValueError(f"JWT signature validation failed: {e}")
    return json.loads(verified.claims)
