import threading
from http.server import HTTPServer
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from stravabase.ingest.strava_auth import (
    CallbackHandler,
    build_authorize_url,
    parse_callback,
    run_auth_flow,
    store_authorization,
)
from stravabase.ingest.strava_client import StravaConfigError
from stravabase.store import get_active_user_id, load_profile_tokens


class AthleteOnlyClient:
    def get_athlete(self):
        return {"id": 555, "firstname": "Grace", "lastname": "Hopper", "city": "Arlington"}


def test_authorize_url_points_at_local_callback():
    url = build_authorize_url("1234")
    params = parse_qs(urlparse(url).query)

    assert url.startswith("https://www.strava.com/oauth/authorize?")
    assert params["client_id"] == ["1234"]
    assert params["redirect_uri"] == ["http://localhost:8090/callback"]
    assert "activity:read_all" in params["scope"][0]


def test_store_authorization_saves_tokens_and_athlete(conn):
    token_response = {"access_token": "a-1", "refresh_token": "r-1", "expires_at": 1_800_000_000}
    athlete = store_authorization(conn, "1234", "secret", token_response,
                                  scope="read,activity:read_all",
                                  api_client=AthleteOnlyClient())

    user_id = get_active_user_id(conn)
    assert athlete["id"] == 555
    assert load_profile_tokens(conn, user_id) == {
        "access_token": "a-1", "refresh_token": "r-1", "expires_at": 1_800_000_000,
    }
    row = conn.execute(
        "SELECT strava_athlete_id, firstname, strava_scope FROM user_profile WHERE id = ?",
        (user_id,),
    ).fetchone()
    assert row == (555, "Grace", "read,activity:read_all")


def test_auth_flow_requires_client_credentials(conn, monkeypatch):
    monkeypatch.delenv("STRAVA_CLIENT_ID", raising=False)
    monkeypatch.delenv("STRAVA_CLIENT_SECRET", raising=False)
    with pytest.raises(StravaConfigError):
        run_auth_flow({"strava": {}}, conn, open_browser=False)


@pytest.mark.parametrize("path, status", [
    ("/callback?code=abc&scope=read,activity:read_all", 200),
    ("/callback?error=access_denied", 400),
    ("/favicon.ico", 404),
])
def test_parse_callback_status(path, status):
    assert parse_callback(path)[0] == status


def test_callback_handler_captures_code_and_scope():
    CallbackHandler.auth_code = CallbackHandler.scope = None
    server = HTTPServer(("127.0.0.1", 0), CallbackHandler)
    worker = threading.Thread(target=server.handle_request)
    worker.start()
    try:
        port = server.server_address[1]
        session = requests.Session()
        session.trust_env = False
        response = session.get(
            f"http://127.0.0.1:{port}/callback?code=abc&scope=read,activity:read_all",
            timeout=5,
        )
    finally:
        worker.join(timeout=5)
        server.server_close()

    assert response.status_code == 200
    assert "Authorization successful" in response.text
    assert CallbackHandler.auth_code == "abc"
    assert CallbackHandler.scope == "read,activity:read_all"
