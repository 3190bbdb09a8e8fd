"""
Client for a Solid access-grant (VC) service.

Access Requests and Access Grants are Verifiable Credentials issued by the
service discovered for a resource. The flow implemented here:

    1. issue_access_request()            -> signed SolidAccessRequest VC
    2. build_access_management_ui_url()  -> consent UI URL carrying the
                                            request VC id and our callback
    3. (user approves/denies out of process, the UI redirects back with
        ?accessGrantUrl=<grant VC url>)
    4. get_access_grant()                -> verified AccessGrant
"""
import re
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import requests

from utils.uma import parse_www_authenticate, uma_configuration, UmaError

logging.basicConfig(level=logging.INFO)

CREDENTIAL_CONTEXT = [
    "https://www.w3.org/2018/credentials/v1",
    "https://schema.inrupt.com/credentials/v1.jsonld",
]
ACCESS_REQUEST_TYPE = "SolidAccessRequest"
ACCESS_GRANT_TYPES = ("SolidAccessGrant", "SolidConsentGrant")
ACCESS_DENIAL_TYPES = ("SolidAccessDenial",)

GC_CONSENT_STATUS_REQUESTED = "https://w3id.org/GConsent#ConsentStatusRequested"
GC_CONSENT_STATUS_EXPLICITLY_GIVEN = "https://w3id.org/GConsent#ConsentStatusExplicitlyGiven"
GC_CONSENT_STATUS_DENIED = "https://w3id.org/GConsent#ConsentStatusDenied"

GRANT_VC_URL_PARAM_NAME = "accessGrantUrl"
REQUEST_VC_URL_PARAM_NAME = "requestVcUrl"
REDIRECT_URL_PARAM_NAME = "redirectUrl"

INTEROP_AUTHORIZATION_AGENT = "http://www.w3.org/ns/solid/interop#hasAuthorizationAgent"
INTEROP_AUTHORIZATION_AGENT_KEYS = (
    INTEROP_AUTHORIZATION_AGENT,
    "interop:hasAuthorizationAgent",
    "hasAuthorizationAgent",
)


class AccessGrantError(Exception):
    pass


class AccessGrantInvalid(AccessGrantError):
    """The grant reference or credential is malformed, expired or fails verification."""


class AccessGrantServiceError(AccessGrantError):
    """The access-grant service is unreachable or answered with an error."""


class AccessRequestExpired(AccessGrantError):
    """The expiration date configured for access requests has already passed."""


def _now():
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


_FRACTION = re.compile(r"\.(\d+)")


def _parse_date(value):
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid date: {value!r}")
    value = value.replace("Z", "+00:00")
    # fromisoformat only takes 3 or 6 fractional digits before 3.11
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_list(value):
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


@dataclass(frozen=True)
class AccessModes:
    read: bool = False
    write: bool = False
    append: bool = False

    def to_modes(self) -> list:
        modes = []
        if self.read:
            modes.append("Read")
        if self.write:
            modes.append("Write")
        if self.append:
            modes.append("Append")
        return modes


@dataclass(frozen=True)
class AccessRequest:
    requestor: str
    resource_owner: str
    resources: tuple
    access: AccessModes
    purpose: tuple
    expiration_date: datetime

    def validate(self, now=None):
        now = now or _now()
        if not self.requestor:
            raise ValueError("requestor is required")
        if not self.resource_owner:
            raise ValueError("resource_owner is required")
        if not self.resources or not all(self.resources):
            raise ValueError("at least one resource is required")
        if not self.access.to_modes():
            raise ValueError("at least one access mode is required")
        if self.expiration_date <= now:
            raise AccessRequestExpired(f"Access request expiration {_iso(self.expiration_date)} has passed")

    def to_credential(self, now=None) -> dict:
        now = now or _now()
        consent = {
            "mode": self.access.to_modes(),
            "hasStatus": GC_CONSENT_STATUS_REQUESTED,
            "forPersonalData": list(self.resources),
            "isConsentForDataSubject": self.resource_owner,
        }
        if self.purpose:
            consent["forPurpose"] = list(self.purpose)
        return {
            "@context": CREDENTIAL_CONTEXT,
            "type": [ACCESS_REQUEST_TYPE],
            "issuanceDate": _iso(now),
            "expirationDate": _iso(self.expiration_date),
            "credentialSubject": {
                "id": self.requestor,
                "hasConsent": consent,
            },
        }


class AccessGrant:
    """A resolved and verified access grant VC."""

    def __init__(self, vc: dict):
        self.vc = vc

    @property
    def id(self):
        return self.vc.get("id")

    @property
    def types(self):
        return _as_list(self.vc.get("type"))

    @property
    def consent(self) -> dict:
        subject = self.vc.get("credentialSubject", {})
        return subject.get("providedConsent", {})

    @property
    def resources(self) -> list:
        return _as_list(self.consent.get("forPersonalData"))

    @property
    def modes(self) -> list:
        return _as_list(self.consent.get("mode"))

    @property
    def expiration_date(self):
        return _parse_date(self.vc.get("expirationDate"))

    @property
    def is_granted(self) -> bool:
        if any(t in ACCESS_DENIAL_TYPES for t in self.types):
            return False
        return self.consent.get("hasStatus") == GC_CONSENT_STATUS_EXPLICITLY_GIVEN

    def is_expired(self, now=None) -> bool:
        expiration = self.expiration_date
        return expiration is not None and expiration <= (now or _now())

    def covers(self, resource) -> bool:
        return resource in self.resources

    def to_json(self, indent=2) -> str:
        return json.dumps(self.vc, indent=indent)


# Discovery

def get_access_api_endpoint(resource, session, vc_provider=None) -> str:
    """Base URL of the VC service protecting `resource`."""
    if vc_provider:
        return vc_provider.rstrip("/")
    try:
        r = requests.head(resource, timeout=session.timeout)
    except requests.RequestException as e:
        raise AccessGrantServiceError(f"Resource {resource} unreachable: {e}") from e
    try:
        challenge = parse_www_authenticate(r.headers.get("WWW-Authenticate", ""))
        uma_config = uma_configuration(challenge["as_uri"], session.timeout)
    except UmaError as e:
        raise AccessGrantServiceError(f"No access-grant service found for {resource}") from e
    vc_issuer = uma_config.get("verifiable_credential_issuer")
    if not vc_issuer:
        raise AccessGrantServiceError(f"UMA server of {resource} does not advertise a VC issuer")
    return vc_issuer.rstrip("/")


def get_vc_configuration(vc_service, session) -> dict:
    defaults = {
        "issuerService": vc_service + "/issue",
        "verifierService": vc_service + "/verify",
        "statusService": vc_service + "/status",
        "derivationService": vc_service + "/derive",
    }
    try:
        r = requests.get(vc_service + "/.well-known/vc-configuration", timeout=session.timeout)
    except requests.RequestException as e:
        raise AccessGrantServiceError(f"VC service {vc_service} unreachable: {e}") from e
    if not r.ok:
        logging.warning("no vc-configuration at %s (%s), using defaults", vc_service, r.status_code)
        return defaults
    try:
        config = r.json()
    except ValueError:
        logging.warning("vc-configuration at %s is not JSON, using defaults", vc_service)
        return defaults
    return {k: config.get(k) or v for k, v in defaults.items()}


# Access request

def issue_access_request(access_request: AccessRequest, session, vc_provider=None) -> dict:
    """
    Ask the VC service to issue a signed access request credential.
    Returns the VC as a dict.
    """
    try:
        access_request.validate()
    except ValueError as e:
        raise AccessGrantInvalid(str(e)) from e

    vc_service = get_access_api_endpoint(access_request.resources[0], session, vc_provider)
    issuer_service = get_vc_configuration(vc_service, session)["issuerService"]
    body = {"credential": access_request.to_credential()}
    try:
        r = session.fetch("POST", issuer_service, json=body)
    except requests.RequestException as e:
        raise AccessGrantServiceError(f"VC issuer {issuer_service} unreachable: {e}") from e
    if not r.ok:
        logging.error("access request issuance failed %s: %s", r.status_code, r.text)
        raise AccessGrantServiceError(f"VC issuer refused the access request (HTTP {r.status_code})")
    try:
        vc = r.json()
    except ValueError as e:
        raise AccessGrantServiceError("VC issuer returned a non JSON response") from e
    if ACCESS_REQUEST_TYPE not in _as_list(vc.get("type")) or not vc.get("id"):
        raise AccessGrantServiceError("VC issuer did not return an access request credential")
    consent = vc.get("credentialSubject", {}).get("hasConsent")
    if not isinstance(consent, dict) or not consent.get("isConsentForDataSubject"):
        raise AccessGrantServiceError("Access request credential names no resource owner")
    logging.info("access request issued: %s", vc["id"])
    return vc


# Consent UI

def get_access_management_ui(resource_owner, session):
    """
    Authorization agent declared in the resource owner's WebID profile, if any.
    """
    try:
        r = requests.get(
            resource_owner,
            headers={"Accept": "application/ld+json"},
            timeout=session.timeout,
        )
    except requests.RequestException as e:
        logging.warning("WebID %s unreachable: %s", resource_owner, e)
        return None
    if not r.ok:
        logging.warning("WebID %s returned %s", resource_owner, r.status_code)
        return None
    try:
        profile = r.json()
    except ValueError:
        logging.warning("WebID %s is not served as JSON-LD", resource_owner)
        return None
    return _find_authorization_agent(profile, resource_owner)


def _find_authorization_agent(profile, web_id):
    nodes = profile
    if isinstance(profile, dict):
        nodes = profile.get("@graph", [profile])
    nodes = [n for n in _as_list(nodes) if isinstance(n, dict)]
    # prefer the node describing the WebID itself
    nodes.sort(key=lambda n: n.get("@id") != web_id)
    for node in nodes:
        for key in INTEROP_AUTHORIZATION_AGENT_KEYS:
            for value in _as_list(node.get(key)):
                agent = value.get("@id") if isinstance(value, dict) else value
                if agent:
                    return agent
    return None


def _add_query(url, params) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_access_management_ui_url(access_request_vc, redirect_url, session, fallback_access_management_ui=None) -> str:
    """
    URL of the consent UI where the resource owner reviews the request.
    The UI sends the user back to `redirect_url` with the grant reference.
    """
    owner = access_request_vc["credentialSubject"]["hasConsent"]["isConsentForDataSubject"]
    ui = get_access_management_ui(owner, session) or fallback_access_management_ui
    if not ui:
        raise AccessGrantServiceError(f"No access management UI for {owner} and no fallback configured")
    return _add_query(ui, {
        REQUEST_VC_URL_PARAM_NAME: access_request_vc["id"],
        REDIRECT_URL_PARAM_NAME: redirect_url,
    })


# Access grant

def _check_structure(vc):
    if not isinstance(vc, dict):
        raise AccessGrantInvalid("Access grant is not a JSON object")
    types = _as_list(vc.get("type"))
    if not any(t in ACCESS_GRANT_TYPES + ACCESS_DENIAL_TYPES for t in types):
        raise AccessGrantInvalid(f"Not an access grant credential: {types}")
    consent = vc.get("credentialSubject", {}).get("providedConsent")
    if not isinstance(consent, dict) or not _as_list(consent.get("forPersonalData")):
        raise AccessGrantInvalid("Access grant names no resource")
    if not vc.get("proof"):
        raise AccessGrantInvalid("Access grant has no proof")
    try:
        _parse_date(vc.get("expirationDate"))
    except ValueError as e:
        raise AccessGrantInvalid(f"Access grant has an invalid expirationDate: {vc.get('expirationDate')!r}") from e


def verify_access_grant(grant: AccessGrant, session, vc_provider=None):
    vc_service = get_access_api_endpoint(grant.resources[0], session, vc_provider)
    verifier_service = get_vc_configuration(vc_service, session)["verifierService"]
    try:
        r = session.fetch("POST", verifier_service, json={"verifiableCredential": grant.vc})
    except requests.RequestException as e:
        raise AccessGrantServiceError(f"VC verifier {verifier_service} unreachable: {e}") from e
    if r.status_code >= 500:
        raise AccessGrantServiceError(f"VC verifier error (HTTP {r.status_code})")
    try:
        result = r.json()
    except ValueError as e:
        raise AccessGrantServiceError("VC verifier returned a non JSON response") from e
    if not r.ok or result.get("errors"):
        raise AccessGrantInvalid(f"Access grant verification failed: {result.get('errors')}")
    for warning in result.get("warnings", []):
        logging.warning("access grant %s: %s", grant.id, warning)


def get_access_grant(grant_url, session, vc_provider=None) -> AccessGrant:
    """
    Dereference, validate and verify an access grant VC.
    Denied grants resolve too; check AccessGrant.is_granted.
    """
    if not grant_url or not grant_url.startswith(("https://", "http://")):
        raise AccessGrantInvalid(f"Invalid access grant reference: {grant_url!r}")
    try:
        r = session.fetch("GET", grant_url, headers={"Accept": "application/ld+json"})
    except requests.RequestException as e:
        raise AccessGrantServiceError(f"Access grant {grant_url} unreachable: {e}") from e
    if r.status_code >= 500:
        raise AccessGrantServiceError(f"Access grant service error (HTTP {r.status_code})")
    if not r.ok:
        raise AccessGrantInvalid(f"Access grant {grant_url} could not be resolved (HTTP {r.status_code})")
    try:
        vc = r.json()
    except ValueError as e:
        raise AccessGrantInvalid("Access grant is not JSON") from e

    _check_structure(vc)
    grant = AccessGrant(vc)
    if grant.is_expired():
        raise AccessGrantInvalid(f"Access grant {grant.id} expired on {vc['expirationDate']}")
    verify_access_grant(grant, session, vc_provider)
    logging.info("access grant %s resolved (granted=%s)", grant.id, grant.is_granted)
    return grant
