import json
import time
from unittest import mock

import pytest
import requests
from jwcrypto import jwk, jwt

from utils import solid_session, tokens
from utils.solid_session import LoginError

from conftest import ISSUER, REQUESTOR

TOKEN_ENDPOINT = ISSUER + "/token"
JWKS_URI = ISSUER + "/jwks"

SIGNING_KEY = jwk.JWK.generate(kty="EC", crv="P-256", kid="key-1")


def id_token(claims=None, key=SIGNING_KEY):
    now = int(time.time())
    payload = {
        "iss": ISSUER,
        "aud": "requestor-client",
        "sub": "requestor-client",
        "webid": REQUESTOR,
        "iat": now,
        "exp": now + 300,
    }
    payload.update(claims or {})
    token = jwt.JWT(header={"alg": "ES256", "kid": key.key_id}, claims=payload)
    token.make_signed_token(key)
    return token.serialize()


@pytest.fixture
def discovery(fake_response):
    jwks = {"keys": [SIGNING_KEY.export_public(as_dict=True)]}

    def get(url, timeout=None):
        if url == ISSUER + "/.well-known/openid-configuration":
            return fake_response(200, {"issuer": ISSUER, "token_endpoint": TOKEN_ENDPOINT, "jwks_uri": JWKS_URI})
        if url == JWKS_URI:
            return fake_response(200, jwks)
        return fake_response(404)

    with mock.patch("requests.get", side_effect=get) as patched:
        yield patched


@mock.patch("requests.post")
class TestLogin:
    def test_bearer(self, post, discovery, fake_response):
        post.return_value = fake_response(200, {
            "access_token": "opaque-token", "token_type": "Bearer", "expires_in": 300, "id_token": id_token(),
        })

        session = solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")

        assert session.info.web_id == REQUESTOR
        assert session.info.token_type == "Bearer"
        assert session.info.is_logged_in
        assert session.info.expires_at is not None
        assert post.call_args[0] == (TOKEN_ENDPOINT,)
        assert post.call_args.kwargs["data"]["grant_type"] == "client_credentials"
        assert post.call_args.kwargs["auth"] == ("requestor-client", "secret")
        assert "DPoP" not in post.call_args.kwargs["headers"]
        assert session.auth_headers("GET", "https://storage.example.org/x") == {
            "Authorization": "Bearer opaque-token",
        }

    def test_dpop(self, post, discovery, fake_response):
        post.return_value = fake_response(200, {
            "access_token": "opaque-token", "token_type": "DPoP", "id_token": id_token(),
        })

        session = solid_session.login("requestor-client", "secret", ISSUER)

        proof = post.call_args.kwargs["headers"]["DPoP"]
        assert tokens.get_header_from_token(proof)["typ"] == "dpop+jwt"
        assert tokens.get_payload_from_token(proof)["htu"] == TOKEN_ENDPOINT
        headers = session.auth_headers("get", "https://storage.example.org/x?y=1")
        assert headers["Authorization"] == "DPoP opaque-token"
        claims = tokens.get_payload_from_token(headers["DPoP"])
        assert claims["htm"] == "GET"
        assert claims["htu"] == "https://storage.example.org/x"
        assert "ath" in claims

    def test_webid_from_access_token(self, post, discovery, fake_response):
        access_token = id_token({"webid": "https://id.example.org/other"})
        post.return_value = fake_response(200, {"access_token": access_token, "token_type": "Bearer"})
        session = solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")
        assert session.info.web_id == "https://id.example.org/other"

    def test_no_webid(self, post, discovery, fake_response):
        post.return_value = fake_response(200, {"access_token": "opaque-token", "token_type": "Bearer"})
        with pytest.raises(LoginError):
            solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")

    def test_id_token_signed_by_unknown_key(self, post, discovery, fake_response):
        other_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="key-1")
        post.return_value = fake_response(200, {"access_token": "t", "id_token": id_token(key=other_key)})
        with pytest.raises(LoginError):
            solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")

    def test_id_token_for_another_client(self, post, discovery, fake_response):
        token = id_token({"aud": "someone-else", "azp": "someone-else"})
        post.return_value = fake_response(200, {"access_token": "t", "id_token": token})
        with pytest.raises(LoginError):
            solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")

    def test_rejected_credentials(self, post, discovery, fake_response):
        post.return_value = fake_response(401, {"error": "invalid_client"}, text='{"error": "invalid_client"}')
        with pytest.raises(LoginError, match="401"):
            solid_session.login("requestor-client", "wrong", ISSUER, token_type="Bearer")

    def test_token_endpoint_unreachable(self, post, discovery):
        post.side_effect = requests.ConnectionError("down")
        with pytest.raises(LoginError):
            solid_session.login("requestor-client", "secret", ISSUER, token_type="Bearer")

    def test_issuer_unreachable(self, post):
        with mock.patch("requests.get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(LoginError):
                solid_session.login("requestor-client", "secret", ISSUER)
        post.assert_not_called()

    def test_missing_credentials(self, post):
        with pytest.raises(LoginError):
            solid_session.login("", "secret", ISSUER)

    def test_unknown_token_type(self, post):
        with pytest.raises(ValueError):
            solid_session.login("requestor-client", "secret", ISSUER, token_type="MAC")


@mock.patch("requests.request")
def test_fetch_adds_authorization(request, fake_response):
    info = solid_session.SessionInfo(web_id=REQUESTOR, client_id="c", issuer=ISSUER, token_type="Bearer")
    session = solid_session.Session(info, "opaque-token", timeout=5)
    request.return_value = fake_response(200)

    session.fetch("GET", "https://storage.example.org/x", headers={"Accept": "text/plain"})

    request.assert_called_once_with(
        "GET", "https://storage.example.org/x",
        headers={"Accept": "text/plain", "Authorization": "Bearer opaque-token"},
        timeout=5,
    )
