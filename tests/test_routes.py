import pytest
from fastapi.testclient import TestClient

from server_api.core.errors import DatabaseError
from server_api.core.security import revocation_key
from server_api.main import create_app, install_services
from server_api.models import User
from server_api.routes import deps
from server_api.services.search import SearchClient

from conftest import PASSWORD, FakeResponse

LONG_DESC = "An extremely welcoming community server with events every weekend. " * 2


class RecordingEmailService:
    def __init__(self):
        self.sent_to = []

    async def send_code(self, email):
        self.sent_to.append(email)


class SearchHttp:
    def request(self, method, url, headers=None, json=None, timeout=None):
        return FakeResponse(
            payload={
                "hits": [{"id": 1, "name": "hit", "ip": "9.9.9.9", "type": "JAVA", "auth_mode": "OFFICIAL"}],
                "estimatedTotalHits": 1,
            }
        )


@pytest.fixture
def app(cache, store, tokens):
    application = create_app()
    install_services(application, cache, store, storage=None)
    application.state.token_service = tokens
    application.state.email_service = RecordingEmailService()
    application.state.search_client = SearchClient(base_url="http://meili.test", http=SearchHttp())
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_list_servers_anonymous(client, factory):
    for index in range(7):
        factory.server(name=f"s{index}", is_hide=index == 0, ip="1.2.3.4")

    response = client.get("/v2/servers/", params={"page": 1, "page_size": 5, "seed": 42})

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 7
    assert body["total_pages"] == 2
    assert len(body["data"]) == 5
    assert all(item["permission"] == "guest" for item in body["data"])
    hidden = [item for item in body["data"] if item["is_hide"]]
    assert all(item["ip"] is None for item in hidden)


def test_list_servers_repeated_filters(client, factory):
    factory.server(name="java", type="JAVA")
    factory.server(name="bedrock", type="BEDROCK")
    factory.server(name="other", type="JAVA", auth_mode="OFFLINE")

    response = client.get(
        "/v2/servers/",
        params=[("type", "JAVA"), ("type", "BEDROCK"), ("auth_mode", "OFFICIAL"), ("seed", "1")],
    )

    assert sorted(item["name"] for item in response.json()["data"]) == ["bedrock", "java"]


@pytest.mark.parametrize("params", [{"type": "java"}, {"type": "foo"}, {"auth_mode": "MICROSOFT"}])
def test_unknown_enum_filters_are_rejected(client, factory, params):
    factory.server(type="JAVA")

    response = client.get("/v2/servers/", params=params)

    assert response.status_code == 422


def test_invalid_paging_is_a_validation_error(client):
    response = client.get("/v2/servers/", params={"page": 0})

    assert response.status_code == 400
    assert response.json()["kind"] == "validation"


def test_malformed_token_is_rejected(client, factory):
    factory.server()

    response = client.get("/v2/servers/", headers=bearer("not-a-token"))

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthorized"
    assert response.json()["reason"] == "malformed"
    assert response.headers["www-authenticate"] == "Bearer"


def test_non_bearer_authorization_is_anonymous(client):
    response = client.get("/v2/servers/", headers={"Authorization": "Basic dXNlcjpwYXNz"})

    assert response.status_code == 200


def test_lowercase_bearer_scheme_is_accepted(client, tokens, factory):
    user = factory.user()
    server = factory.server()
    factory.grant(user.id, server.id, "owner")
    token = tokens.issue(user.id, user.username)

    response = client.get(f"/v2/servers/{server.id}", headers={"authorization": f"bearer {token}"})

    assert response.json()["permission"] == "owner"


def test_revocation_store_outage_returns_503(client, tokens, fake_redis):
    token = tokens.issue(1, "alice")
    fake_redis.down = True

    with_token = client.get("/v2/servers/", headers=bearer(token))
    anonymous = client.get("/v2/servers/")

    assert with_token.status_code == 503
    assert with_token.json()["detail"] == "Session service unavailable"
    assert anonymous.status_code == 200


def test_detail_not_found(client):
    response = client.get("/v2/servers/404")

    assert response.status_code == 404
    assert response.json() == {"detail": "Server not found", "kind": "not_found", "status": 404}


def test_database_errors_are_generic(client, store, monkeypatch):
    async def broken(server_id):
        raise DatabaseError("SELECT * FROM server failed: disk I/O error")

    monkeypatch.setattr(store, "get_server", broken)

    response = client.get("/v2/servers/1")

    assert response.status_code == 500
    assert response.json()["detail"] == "Database error"


def test_total_players(client, factory):
    server = factory.server()
    factory.status(server.id, {"players": {"online": 12, "max": 50}})

    assert client.get("/v2/servers/players").json() == {"total_players": 12}


def test_login_logout_flow(client, factory, session_factory, fake_redis):
    user = factory.user("carol")

    login = client.post(
        "/v2/auth/login", json={"username_or_email": "carol", "password": PASSWORD},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert login.status_code == 200
    token = login.json()["access_token"]
    assert login.json()["expires_in"] == 30 * 24 * 60 * 60

    with session_factory() as db:
        refreshed = db.query(User).filter(User.id == user.id).one()
        assert refreshed.last_login is not None
        assert refreshed.last_login_ip == "203.0.113.9"

    logout = client.post("/v2/auth/logout", headers=bearer(token))
    assert logout.status_code == 200
    assert revocation_key(token) in fake_redis.data

    again = client.post("/v2/auth/logout", headers=bearer(token))
    assert again.status_code == 401
    assert again.json()["reason"] == "revoked"


def test_login_by_email(client, factory):
    factory.user("dave", email="dave@example.com")

    response = client.post(
        "/v2/auth/login", json={"username_or_email": "dave@example.com", "password": PASSWORD}
    )

    assert response.status_code == 200


def test_login_failures(client, factory):
    factory.user("erin")

    wrong = client.post("/v2/auth/login", json={"username_or_email": "erin", "password": "nope"})
    unknown = client.post("/v2/auth/login", json={"username_or_email": "nobody", "password": "x"})
    empty = client.post("/v2/auth/login", json={"username_or_email": "", "password": ""})

    assert wrong.status_code == 401
    assert unknown.status_code == 401
    assert empty.status_code == 400


def test_logout_requires_token(client):
    response = client.post("/v2/auth/logout")

    assert response.status_code == 401


def test_register_email_code(client, app, factory):
    factory.user("frank", email="frank@example.com")

    taken = client.post("/v2/auth/register/email-code", json={"email": "frank@example.com"})
    fresh = client.post("/v2/auth/register/email-code", json={"email": "new@example.com"})
    invalid = client.post("/v2/auth/register/email-code", json={"email": "not-an-email"})

    assert taken.status_code == 409
    assert fresh.status_code == 200
    assert app.state.email_service.sent_to == ["new@example.com"]
    assert invalid.status_code == 422


def test_revocation_status_requires_admin_key(client, tokens, monkeypatch):
    monkeypatch.setattr(deps, "ADMIN_API_KEY", "admin-key")
    live = tokens.issue(1, "a")
    revoked = tokens.issue(2, "b")
    client.post("/v2/auth/logout", headers=bearer(revoked))

    forbidden = client.post("/v2/auth/tokens/revocation-status", json={"tokens": [live]})
    allowed = client.post(
        "/v2/auth/tokens/revocation-status",
        json={"tokens": [live, revoked]},
        headers={"X-Admin-Key": "admin-key"},
    )

    assert forbidden.status_code == 403
    assert allowed.json() == {"revoked": [False, True]}


def test_update_server_route(client, tokens, factory):
    user = factory.user()
    server = factory.server()
    factory.grant(user.id, server.id, "owner")
    token = tokens.issue(user.id, user.username)

    response = client.put(
        f"/v2/servers/{server.id}",
        data={
            "name": "Updated",
            "ip": "10.1.1.1",
            "desc": LONG_DESC,
            "tags": ["pvp", "rpg"],
            "version": "1.21",
            "link": "https://example.net",
        },
        headers=bearer(token),
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Updated"
    assert response.json()["tags"] == ["pvp", "rpg"]


def test_update_server_requires_login(client, factory):
    server = factory.server()

    response = client.put(f"/v2/servers/{server.id}", data={"name": "x"})

    assert response.status_code == 401


def test_gallery_and_managers_routes(client, factory):
    owner = factory.user("owner")
    server = factory.server(name="Pics")
    factory.grant(owner.id, server.id, "owner")

    gallery = client.get(f"/v2/servers/{server.id}/gallery")
    managers = client.get(f"/v2/servers/{server.id}/managers")

    assert gallery.json() == {"id": server.id, "name": "Pics", "gallery_images": []}
    assert managers.json()["owners"][0]["display_name"] == "Owner"
    assert managers.json()["admins"] == []


def test_search_route(client):
    response = client.get("/v2/search/", params={"query": "hit", "type": "JAVA", "limit": 5})

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 1
    assert body["limit"] == 5
    assert body["hits"][0]["name"] == "hit"
