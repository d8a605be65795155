"""One-time Strava OAuth2 setup: exchanges an authorization code for tokens.

Prerequisites:
  1. Create a Strava API app at https://www.strava.com/settings/api
  2. Set the authorization callback domain to: localhost
  3. Set strava.client_id / strava.client_secret in config/config.yaml,
     or STRAVA_CLIENT_ID / STRAVA_CLIENT_SECRET in the environment

Tokens and the athlete's profile are stored on the active user_profile row.
"""

import html
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlencode, urlparse

from stravalib import Client

from stravabase.config import get_strava_setting
from stravabase.ingest.strava_client import StravaClient, StravaConfigError, StravaCredentials
from stravabase.store import get_active_user_id, save_profile_tokens, update_profile_from_athlete

REDIRECT_PORT = 8090
REDIRECT_PATH = "/callback"
AUTH_SCOPE = "read,activity:read_all,profile:read_all"


def parse_callback(path: str) -> tuple[int, dict]:
    """Map a callback request path to (HTTP status, query params)."""
    parsed = urlparse(path)
    if parsed.path != REDIRECT_PATH:
        return 404, {}
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    return (200 if "code" in params else 400), params


class CallbackHandler(BaseHTTPRequestHandler):
    """Serves the OAuth redirect and keeps the code and granted scope."""

    auth_code = None
    scope = None

    def _respond(self, status: int, heading: str = "", detail: str = ""):
        self.send_response(status)
        if heading:
            self.send_header("Content-Type", "text/html")
        self.end_headers()
        if heading:
            self.wfile.write(f"<html><body><h2>{heading}</h2>{detail}</body></html>".encode())

    def do_GET(self):
        status, params = parse_callback(self.path)
        if status == 200:
            CallbackHandler.auth_code = params["code"]
            CallbackHandler.scope = params.get("scope")
            self._respond(200, "Authorization successful!",
                          "<p>You can close this tab and return to the terminal.</p>")
        elif status == 400:
            self._respond(400, f"Error: {html.escape(params.get('error', 'unknown'))}")
        else:
            self._respond(404)

    def log_message(self, format, *args):
        pass


def build_authorize_url(client_id: str, port: int = REDIRECT_PORT) -> str:
    query = urlencode({
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": f"http://localhost:{port}{REDIRECT_PATH}",
        "scope": AUTH_SCOPE,
        "approval_prompt": "auto",
    })
    return f"https://www.strava.com/oauth/authorize?{query}"


def wait_for_code(port: int = REDIRECT_PORT) -> str | None:
    """Serve a single callback request and return the code it carried."""
    CallbackHandler.auth_code = None
    CallbackHandler.scope = None
    server = HTTPServer(("localhost", port), CallbackHandler)
    try:
        server.handle_request()
    finally:
        server.server_close()
    return CallbackHandler.auth_code


def exchange_code(client_id: str, client_secret: str, code: str):
    client = Client()
    return client.exchange_code_for_token(
        client_id=int(client_id),
        client_secret=client_secret,
        code=code,
    )


def store_authorization(conn, client_id: str, client_secret: str, token_response,
                        scope: str | None = None, api_client: StravaClient | None = None) -> dict:
    """Persist a token response on the active profile and fill in the athlete.

    Returns the athlete payload from GET /athlete.
    """
    user_id = get_active_user_id(conn)
    save_profile_tokens(conn, user_id, token_response["access_token"],
                        token_response["refresh_token"], int(token_response["expires_at"]),
                        scope=scope)

    credentials = StravaCredentials(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=token_response["refresh_token"],
        access_token=token_response["access_token"],
        expires_at=int(token_response["expires_at"]),
    )
    api_client = api_client or StravaClient(credentials)
    athlete = api_client.get_athlete()
    update_profile_from_athlete(conn, user_id, athlete)
    conn.commit()
    return athlete


def run_auth_flow(config: dict | None, conn, open_browser: bool = True) -> dict:
    """Interactive authorization: browser -> local callback -> token exchange."""
    client_id = get_strava_setting(config, "client_id", "STRAVA_CLIENT_ID")
    client_secret = get_strava_setting(config, "client_secret", "STRAVA_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise StravaConfigError(
            "STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET must be set "
            "(environment or strava: section of config/config.yaml)"
        )

    auth_url = build_authorize_url(client_id)
    print("Opening browser for Strava authorization...")
    print(f"If the browser doesn't open, visit:\n  {auth_url}\n")
    if open_browser:
        webbrowser.open(auth_url)

    print("Waiting for callback...")
    code = wait_for_code()
    if not code:
        raise StravaConfigError("No authorization code received")

    print("Got authorization code, exchanging for tokens...")
    token_response = exchange_code(client_id, client_secret, code)
    return store_authorization(conn, client_id, client_secret, token_response,
                               scope=CallbackHandler.scope)
