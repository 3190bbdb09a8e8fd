"""Shared fixtures for the requestor application tests."""
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

import env
from main import create_app
from utils import access_grants
from utils.solid_session import SessionInfo

APP_URL = "https://requestor.example.org"
ISSUER = "https://login.example.org"
OWNER = "https://id.example.org/alice"
RESOURCE = "https://storage.example.org/alice/notes.txt"
VC_SERVICE = "https://vc.example.org"
REQUESTOR = "https://id.example.org/requestor-app"


def _iso(dt):
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")


@pytest.fixture
def config():
    return env.AppConfig(
        app_url=APP_URL,
        client_id="requestor-client",
        client_secret="requestor-secret",
        oidc_issuer=ISSUER,
        request_life=1800,
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_response():
    def make(status=200, json_data=None, text="", headers=None):
        response = mock.Mock()
        response.status_code = status
        response.ok = status < 400
        response.headers = headers or {}
        response.text = text
        if json_data is None:
            response.json.side_effect = ValueError("not json")
        else:
            response.json.return_value = json_data
        return response
    return make


@pytest.fixture
def session():
    s = mock.Mock()
    s.info = SessionInfo(web_id=REQUESTOR, client_id="requestor-client", issuer=ISSUER, token_type="Bearer")
    s.timeout = 10
    return s


@pytest.fixture
def grant_vc():
    now = datetime.now(timezone.utc)
    return {
        "@context": access_grants.CREDENTIAL_CONTEXT,
        "id": VC_SERVICE + "/vc/grant-1",
        "type": ["VerifiableCredential", "SolidAccessGrant"],
        "issuer": VC_SERVICE,
        "issuanceDate": _iso(now),
        "expirationDate": _iso(now + timedelta(minutes=30)),
        "credentialSubject": {
            "id": OWNER,
            "providedConsent": {
                "mode": ["Read"],
                "hasStatus": access_grants.GC_CONSENT_STATUS_EXPLICITLY_GIVEN,
                "forPersonalData": [RESOURCE],
                "isProvidedTo": REQUESTOR,
            },
        },
        "proof": {
            "type": "Ed25519Signature2020",
            "proofPurpose": "assertionMethod",
            "proofValue": "z3FXQjecWufY46yg5abdVZsXqLhxhueuSoZgNSARiKBk",
        },
    }


@pytest.fixture
def grant(grant_vc):
    return access_grants.AccessGrant(grant_vc)
