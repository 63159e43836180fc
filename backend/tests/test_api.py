import json
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import FakeSandbox, FakeTransport

from courier.core.codec import POSTMAN_SCHEMA
from courier.core.transports import TransportRegistry
from courier.core.workspace import Workspace, get_workspace
from courier.main import app
from courier.models import RawResponse


@pytest.fixture
def ws(tmp_path):
    workspace = Workspace(str(tmp_path))
    workspace.runner.transports = TransportRegistry(
        {"http": FakeTransport(RawResponse(status=201, status_text="Created", body='{"token": "abc"}'))}
    )
    workspace.runner.sandbox = FakeSandbox()
    return workspace


@pytest.fixture
def client(ws):
    app.dependency_overrides[get_workspace] = lambda: ws
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _wait_for_history(client, count):
    for _ in range(100):
        entries = client.get("/api/history").json()
        if len(entries) >= count:
            return entries
        time.sleep(0.02)
    return entries


def test_health(client):
    assert client.get("/").json() == {"status": "Courier Engine Running"}


def test_tab_edit_send_and_history(client, ws):
    tab = client.post("/api/tabs", json={"kind": "http"}).json()
    res = client.patch(
        f"/api/tabs/{tab['id']}/request",
        json={
            "url": "{{host}}/login",
            "method": "post",
            "extract_rules": [{"source_path": "token", "target_variable": "token"}],
        },
    )
    assert res.status_code == 200
    assert res.json()["is_dirty"] is True

    client.put(f"/api/tabs/{tab['id']}/variables/host", json={"value": "https://api.test"})
    outcome = client.post(f"/api/tabs/{tab['id']}/send").json()
    assert outcome["state"] == "complete"
    assert outcome["response"]["status"] == 201
    assert outcome["warnings"] == []

    sent = ws.runner.transports.get("http").calls[0]
    assert sent.url == "https://api.test/login"
    assert sent.method == "POST"

    tab = client.get(f"/api/tabs/{tab['id']}").json()
    assert tab["response"]["status_text"] == "Created"
    assert tab["local_variables"]["token"] == "abc"
    assert tab["is_loading"] is False

    entries = _wait_for_history(client, 1)
    assert entries[0]["request"]["url"] == "{{host}}/login"


def test_invalid_edit_and_unknown_tab(client):
    tab = client.post("/api/tabs").json()
    res = client.patch(f"/api/tabs/{tab['id']}/request", json={"method": "FETCH"})
    assert res.status_code == 400
    assert client.get("/api/tabs/missing").status_code == 404
    assert client.delete(f"/api/tabs/{tab['id']}").status_code == 200
    assert client.delete(f"/api/tabs/{tab['id']}").status_code == 404


def test_import_export_and_open_saved_request(client):
    document = {
        "info": {"name": "Users", "schema": POSTMAN_SCHEMA},
        "item": [
            {"id": "list-users", "name": "List users", "request": {"method": "GET", "url": "https://api.test/users"}},
            {"name": "broken", "request": 42},
        ],
    }
    res = client.post("/api/collections/import", json={"format": "postman", "document": json.dumps(document)})
    assert res.status_code == 200
    body = res.json()
    assert [w["path"] for w in body["warnings"]] == ["item[1]"]
    collection_id = body["collection"]["id"]
    assert [m["name"] for m in client.get("/api/collections").json()] == ["Users"]

    exported = client.get(f"/api/collections/{collection_id}/export").json()
    assert exported["item"][0]["id"] == "list-users"
    native = client.get(f"/api/collections/{collection_id}/export", params={"format": "native"}).json()
    assert native["format"] == "courier-collection"

    tab = client.post("/api/tabs/open", json={"collection_id": collection_id, "request_id": "list-users"}).json()
    assert tab["collection_request_id"] == "list-users"
    client.patch(f"/api/tabs/{tab['id']}/request", json={"url": "https://api.test/v2/users"})
    client.post(f"/api/tabs/{tab['id']}/save", json={"collection_id": collection_id})
    saved = client.get(f"/api/collections/{collection_id}").json()
    assert saved["items"][0]["url"] == "https://api.test/v2/users"

    res = client.delete(f"/api/collections/{collection_id}/items/list-users")
    assert res.json()["items"] == []


def test_import_errors_name_the_field(client):
    res = client.post("/api/collections/import", json={"document": {"info": {"name": "x"}, "item": []}})
    assert res.status_code == 400
    assert res.json()["field"] == "info.schema"
    res = client.post("/api/collections/import", json={"document": "{not json"})
    assert res.json()["field"] == "document"


def test_codegen_routes(client):
    languages = client.get("/api/codegen/languages").json()
    assert languages[0] == {"id": "curl", "name": "cURL"}
    res = client.post(
        "/api/codegen",
        json={"request": {"type": "http", "url": "https://api.test"}, "language": "curl"},
    )
    assert res.json()["code"] == "curl -X GET 'https://api.test'"
    res = client.post("/api/codegen", json={"request": {"type": "http"}, "language": "cobol"})
    assert res.status_code == 400


def test_environment_resolution_and_vault(client):
    env = {"name": "Dev", "variables": [{"key": "host", "value": "https://dev.test"}]}
    assert client.put("/api/environments/dev", json=env).status_code == 200
    client.post("/api/environments/dev/activate")
    res = client.post("/api/variables/resolve", json={"template": "{{host}}/{{missing}}"}).json()
    assert res["text"] == "https://dev.test/{{missing}}"
    assert res["variables"] == ["host", "missing"]
    assert res["warnings"] == [{"variable": "missing", "message": "Variable 'missing' not found"}]

    secret = {"name": "Prod", "variables": [{"key": "token", "value": "t0k", "secret": True}]}
    assert client.put("/api/environments/prod", json=secret).status_code == 423
    assert client.get("/api/vault").json() == {"locked": True, "has_vault": False}
    client.post("/api/vault/unlock", json={"passphrase": "hunter2"})
    saved = client.put("/api/environments/prod", json=secret).json()
    assert saved["variables"][0]["value"] == "t0k"

    client.post("/api/vault/lock")
    assert client.post("/api/vault/unlock", json={"passphrase": "wrong"}).status_code == 401


def test_oauth2_token_route_reports_incomplete_settings(client):
    tab = client.post("/api/tabs").json()
    client.patch(f"/api/tabs/{tab['id']}/request", json={"auth": {"type": "oauth2", "client_id": "cli"}})
    res = client.post(f"/api/tabs/{tab['id']}/oauth2/token")
    assert res.status_code == 400
    assert res.json()["detail"] == "Token URL is required"
