import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from courier.core.codec import (
    POSTMAN_SCHEMA,
    VENDOR_KEY,
    export_native,
    export_postman,
    import_native,
    import_postman,
    loads_document,
)
from courier.core.errors import CodecError
from courier.models import (
    AuthConfig,
    Collection,
    CollectionFolder,
    ExtractionRule,
    GrpcRequest,
    HttpRequest,
    KeyValue,
    RequestBody,
    SseRequest,
    Variable,
    WebSocketRequest,
)


def _collection():
    login = HttpRequest(
        name="Login",
        method="POST",
        url="{{host}}/login",
        headers=[KeyValue(key="Accept", value="application/json"), KeyValue(key="X-Debug", value="1", enabled=False)],
        params=[KeyValue(key="v", value="2"), KeyValue(key="trace", value="on", enabled=False)],
        body=RequestBody(kind="json", content='{"user": "{{user}}"}'),
        auth=AuthConfig(type="basic", username="ada", password="pw"),
        extract_rules=[ExtractionRule(source_path="body.token", target_variable="token")],
        pre_request_script='pm.variables.set("ts", "1")',
        test_script='pm.test("ok", lambda: None)\nprint("done")',
        timeout_seconds=5,
        verify_ssl=True,
    )
    search = HttpRequest(
        name="Search",
        url="https://api.test/search?fixed=1",
        params=[KeyValue(key="q", value="a")],
        body=RequestBody(kind="raw", content='{"looks": "like json"}'),
        auth=AuthConfig(type="api-key", key="X-Key", value="k", add_to="query"),
    )
    upload = HttpRequest(
        name="Upload",
        method="PUT",
        body=RequestBody(kind="form-data", form=[KeyValue(key="file", value="a.txt"), KeyValue(key="skip", value="x", enabled=False)]),
    )
    greet = GrpcRequest(
        name="Greet",
        url="localhost:50051",
        reflection=True,
        service_name="helloworld.Greeter",
        method_name="SayHello",
        message='{"name": "{{user}}"}',
        metadata=[KeyValue(key="authorization", value="Bearer {{token}}")],
    )
    folder = CollectionFolder(name="Auth", description="Login flows", items=[login, greet])
    return Collection(
        name="Demo",
        description="Demo collection",
        variables=[Variable(key="host", value="https://api.test"), Variable(key="pw", value="s", secret=True, enabled=False)],
        items=[
            folder,
            search,
            upload,
            WebSocketRequest(name="Echo", url="wss://echo.test", headers=[KeyValue(key="Origin", value="x")]),
            SseRequest(name="Ticks", url="https://events.test/ticks"),
        ],
    )


def _postman(*items, **extra):
    return {"info": {"name": "Imported", "schema": POSTMAN_SCHEMA}, "item": list(items), **extra}


def test_postman_round_trip_is_lossless():
    collection = _collection()
    document = export_postman(collection)
    # Survives serialization
    document = json.loads(json.dumps(document))
    result = import_postman(document)
    assert result.warnings == []
    assert result.collection.model_dump() == collection.model_dump()


def test_export_uses_postman_shapes():
    document = export_postman(_collection())
    assert document["info"]["schema"] == POSTMAN_SCHEMA
    assert document["info"]["_postman_id"]
    folder = document["item"][0]
    assert folder["name"] == "Auth"
    login = folder["item"][0]
    assert login["request"]["method"] == "POST"
    assert login["request"]["url"]["raw"] == "{{host}}/login?v=2"
    assert login["request"]["body"]["options"]["raw"]["language"] == "json"
    assert login["request"]["auth"]["type"] == "basic"
    assert [e["listen"] for e in login["event"]] == ["prerequest", "test"]
    assert login["event"][1]["script"]["exec"] == ['pm.test("ok", lambda: None)', 'print("done")']
    # Postman can express the url, body and auth exactly, so no vendor copy
    assert set(login[VENDOR_KEY]) == {"type", "extract_rules", "timeout_seconds", "verify_ssl"}

    grpc = folder["item"][1]
    assert grpc[VENDOR_KEY]["type"] == "grpc"
    assert grpc[VENDOR_KEY]["service_name"] == "helloworld.Greeter"

    assert document["variable"][1] == {"key": "pw", "value": "s", "type": "secret", "disabled": True}


def test_export_keeps_vendor_copy_when_postman_would_lose_data():
    search = export_postman(_collection())["item"][1]
    assert search[VENDOR_KEY]["url"] == "https://api.test/search?fixed=1"
    assert search[VENDOR_KEY]["params"] == [{"key": "q", "value": "a", "enabled": True}]
    assert "body" not in search[VENDOR_KEY]

    odd = HttpRequest(body=RequestBody(kind="none", content="left over"), auth=AuthConfig(type="bearer", token="t", username="u"))
    item = export_postman(Collection(items=[odd]))["item"][0]
    assert item[VENDOR_KEY]["body"]["content"] == "left over"
    assert item[VENDOR_KEY]["auth"]["username"] == "u"
    assert import_postman(export_postman(Collection(items=[odd]))).collection.items[0].auth.username == "u"


def test_partial_import_skips_malformed_items():
    items = [{"name": f"r{i}", "request": {"method": "GET", "url": f"https://api.test/{i}"}} for i in range(10)]
    items[4] = {"name": "broken", "request": {"method": "FETCH", "url": "https://api.test/4"}}
    result = import_postman(_postman(*items))
    assert [r.name for r in result.collection.items] == [f"r{i}" for i in range(10) if i != 4]
    assert len(result.warnings) == 1
    assert result.warnings[0].path == "item[4]"
    assert result.warnings[0].message.startswith("skipped")


def test_nested_item_warning_path():
    document = _postman({"name": "F", "item": [{"name": "ok", "request": "https://a.test"}, "junk"]})
    result = import_postman(document)
    assert result.collection.items[0].items[0].url == "https://a.test"
    assert [w.path for w in result.warnings] == ["item[0].item[1]"]


@pytest.mark.parametrize(
    "document, field",
    [
        ([], "document"),
        ({"item": []}, "info"),
        ({"info": {"name": "x", "schema": "https://example.test/v1"}, "item": []}, "info.schema"),
        ({"info": {"name": "x", "schema": POSTMAN_SCHEMA}, "item": {}}, "item"),
    ],
)
def test_malformed_top_level_fails_whole_import(document, field):
    with pytest.raises(CodecError) as exc:
        import_postman(document)
    assert exc.value.field == field


def test_unknown_fields_survive_round_trip():
    document = _postman(
        {
            "name": "Legacy",
            "protocolProfileBehavior": {"disableBodyPruning": True},
            "request": {
                "method": "POST",
                "url": {"raw": "https://a.test"},
                "proxy": {"host": "proxy.local"},
                "body": {"mode": "graphql", "graphql": {"query": "{ me { id } }"}},
                "auth": {"type": "digest", "digest": [{"key": "algorithm", "value": "MD5"}]},
            },
        },
        auth={"type": "bearer"},
    )
    document["info"]["updatedAt"] = "2024-01-01"
    result = import_postman(document)
    assert sorted(w.message for w in result.warnings) == [
        "auth type 'digest' is not supported",
        "body mode 'graphql' is not supported",
    ]

    exported = export_postman(result.collection)
    item = exported["item"][0]
    assert item["protocolProfileBehavior"] == {"disableBodyPruning": True}
    assert item["request"]["proxy"] == {"host": "proxy.local"}
    assert item["request"]["body"]["mode"] == "graphql"
    assert item["request"]["auth"]["type"] == "digest"
    assert exported["auth"] == {"type": "bearer"}
    assert exported["info"]["updatedAt"] == "2024-01-01"


def test_realistic_postman_import():
    document = _postman(
        {
            "name": "Get user",
            "event": [
                {"listen": "test", "script": {"type": "text/javascript", "exec": ["pm.test('ok', function () {});"]}}
            ],
            "request": {
                "method": "GET",
                "header": "Accept: application/json\nX-Trace: 1",
                "url": {
                    "raw": "{{host}}/users/1?expand=true",
                    "host": ["{{host}}"],
                    "path": ["users", "1"],
                    "query": [{"key": "expand", "value": "true"}],
                },
                "auth": {"type": "bearer", "bearer": {"token": "{{token}}"}},
            },
        },
        variable=[{"key": "host", "value": "https://api.test"}, {"value": "no key"}],
    )
    result = import_postman(document)
    request = result.collection.items[0]
    assert request.url == "{{host}}/users/1"
    assert request.params == [KeyValue(key="expand", value="true")]
    assert request.headers == [KeyValue(key="Accept", value="application/json"), KeyValue(key="X-Trace", value="1")]
    assert request.auth == AuthConfig(type="bearer", token="{{token}}")
    assert request.test_script == "pm.test('ok', function () {});"
    assert [v.key for v in result.collection.variables] == ["host"]
    assert [w.path for w in result.warnings] == ["variable[1]", "item[0]"]


def test_script_languages_and_other_events_survive_export():
    before_response = {"listen": "beforeResponse", "script": {"type": "text/javascript", "exec": ["x()"]}}
    folder_event = {"listen": "prerequest", "script": {"type": "text/javascript", "exec": ["setup()"]}}
    document = _postman(
        {
            "name": "Checked",
            "event": [
                {"listen": "test", "script": {"type": "text/javascript", "exec": ["pm.test('ok', function () {});"]}},
                before_response,
            ],
            "request": {"method": "GET", "url": "https://api.test"},
        },
        {"name": "Folder", "event": [folder_event], "item": []},
    )
    result = import_postman(document)
    messages = [w.message for w in result.warnings]
    assert "event 'beforeResponse' is not run and is kept as-is" in messages
    assert "test script is text/javascript and is kept as text" in messages

    exported = export_postman(result.collection)
    item, folder = exported["item"]
    assert item["event"] == [
        {"listen": "test", "script": {"type": "text/javascript", "exec": ["pm.test('ok', function () {});"]}},
        before_response,
    ]
    assert folder["event"] == [folder_event]

    # Scripts written here default to Python
    fresh = export_postman(Collection(items=[HttpRequest(test_script="pass")]))
    assert fresh["item"][0]["event"][0]["script"]["type"] == "text/python"


def test_native_round_trip_and_errors():
    collection = _collection()
    document = json.loads(json.dumps(export_native(collection)))
    assert import_native(document).collection.model_dump() == collection.model_dump()

    with pytest.raises(CodecError) as exc:
        import_native({"format": "other", "version": 1, "collection": {}})
    assert exc.value.field == "format"
    with pytest.raises(CodecError) as exc:
        import_native({"format": "courier-collection", "version": 99, "collection": {}})
    assert exc.value.field == "version"
    with pytest.raises(CodecError) as exc:
        import_native({"format": "courier-collection", "version": 1, "collection": {"items": [{"type": "ftp"}]}})
    assert exc.value.field == "collection"


def test_loads_document_reports_bad_json():
    with pytest.raises(CodecError) as exc:
        loads_document("{not json")
    assert exc.value.field == "document"


def test_oauth2_auth_round_trip_keeps_unmodelled_settings():
    document = _postman(
        {
            "name": "Token call",
            "request": {
                "method": "GET",
                "url": "https://api.test/me",
                "auth": {
                    "type": "oauth2",
                    "oauth2": [
                        {"key": "accessToken", "value": "{{access}}", "type": "string"},
                        {"key": "tokenType", "value": "MAC", "type": "string"},
                        {"key": "grant_type", "value": "client_credentials", "type": "string"},
                        {"key": "accessTokenUrl", "value": "https://auth.test/token", "type": "string"},
                        {"key": "clientId", "value": "cli", "type": "string"},
                        {"key": "addTokenTo", "value": "header", "type": "string"},
                        {"key": "authRequestParams", "value": [], "type": "any"},
                    ],
                },
            },
        }
    )
    result = import_postman(document)
    assert result.warnings == []
    auth = result.collection.items[0].auth
    assert auth.type == "oauth2"
    assert (auth.access_token, auth.token_type, auth.token_url, auth.client_id) == (
        "{{access}}",
        "MAC",
        "https://auth.test/token",
        "cli",
    )

    exported = export_postman(result.collection)["item"][0]
    rows = {row["key"]: row["value"] for row in exported["request"]["auth"]["oauth2"]}
    assert rows["accessToken"] == "{{access}}"
    assert rows["addTokenTo"] == "header"
    assert rows["authRequestParams"] == []
    assert "auth" not in exported[VENDOR_KEY]
    assert import_postman(export_postman(result.collection)).collection.items[0].auth == auth
