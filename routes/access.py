# access.py
# Requestor side of the access grant flow:
#   GET  /          form (resource owner, resource)
#   POST /request   issue an access request, redirect to the consent UI
#   GET  /redirect  consent UI comes back here with the grant reference
from flask import render_template, current_app, redirect, request, abort
import logging

from env import REDIRECT_PATH
from utils import solid_session, access_grants, resource_fetcher
from utils.access_grants import AccessModes, AccessRequest

logging.basicConfig(level=logging.INFO)


def init_app(app):
    app.add_url_rule('/', view_func=home, methods=['GET'])
    app.add_url_rule('/request', view_func=access_request, methods=['POST'])
    app.add_url_rule(REDIRECT_PATH, view_func=access_redirect, methods=['GET'])
    return


def _login(mode, token_type):
    return solid_session.login(
        mode.client_id,
        mode.client_secret,
        mode.oidc_issuer,
        token_type=token_type,
        timeout=mode.http_timeout,
    )


def home():
    return render_template("index.html", expiration_date=current_app.config["EXPIRATION_DATE"])


def access_request():
    mode = current_app.config["MODE"]
    owner = request.form.get("owner", "").strip()
    resource = request.form.get("resource", "").strip()
    if not owner or not resource:
        abort(400, description="owner and resource are required")

    session = _login(mode, "DPoP")
    request_vc = access_grants.issue_access_request(
        AccessRequest(
            requestor=session.info.web_id,
            resource_owner=owner,
            resources=(resource,),
            access=AccessModes(read=True),
            purpose=mode.purposes,
            expiration_date=current_app.config["EXPIRATION_DATE"],
        ),
        session,
        vc_provider=mode.vc_provider,
    )
    url = access_grants.build_access_management_ui_url(
        request_vc,
        mode.redirect_url,
        session,
        fallback_access_management_ui=mode.fallback_access_management_ui,
    )
    logging.info("redirecting to %s", url)
    return redirect(url, code=302)


def _grant_reference(mode):
    for name in mode.grant_param_names:
        if request.args.get(name):
            if name != mode.grant_param_name:
                logging.warning("grant reference received as legacy parameter %s", name)
            return request.args[name]
    return None


def access_redirect():
    mode = current_app.config["MODE"]
    grant_url = _grant_reference(mode)
    if not grant_url:
        abort(400, description=f"missing {mode.grant_param_name}")

    # Bearer is mandatory for the UMA access token to be valid
    session = _login(mode, "Bearer")
    grant = access_grants.get_access_grant(grant_url, session, vc_provider=mode.vc_provider)
    target_resource = grant.resources[0]

    result = resource_fetcher.get_file(target_resource, grant, session)
    file_content = None
    if isinstance(result, resource_fetcher.Fetched):
        file_content = result.content
    elif isinstance(result, resource_fetcher.Denied):
        logging.warning("access to %s denied: %s", target_resource, result.reason)
    else:
        logging.error("fetching %s failed: %s", target_resource, result.error)

    return render_template(
        "success.html",
        full_vc=grant.to_json(indent=2),
        file_content=file_content,
        resource_url=target_resource,
        outcome=result.kind,
    )
