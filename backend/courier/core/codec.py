"""
Collection interchange: Postman Collection v2.1 and the native JSON format.

Anything Postman cannot express (non-http requests, capture rules, request
settings, values that would not survive the Postman shape) is written to the
`x-courier` vendor key of each item so that export -> import is lossless.
Keys we do not understand are kept in `extras` and written back on export.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from courier.core.errors import CodecError, CodecWarning
from courier.models import (
    AuthConfig,
    Collection,
    CollectionFolder,
    ExtractionRule,
    HttpRequest,
    KeyValue,
    Request,
    RequestAdapter,
    RequestBody,
    Variable,
    new_id,
)

logger = logging.getLogger(__name__)

POSTMAN_SCHEMA = "https://schema.getpostman.com/json/collection/v2.1.0/collection.json"
POSTMAN_SCHEMAS = (
    POSTMAN_SCHEMA,
    "https://schema.postman.com/json/collection/v2.1.0/collection.json",
)
VENDOR_KEY = "x-courier"
NATIVE_FORMAT = "courier-collection"
NATIVE_VERSION = 1
SCRIPT_TYPE = "text/python"

_ITEM_KEYS = {"id", "name", "description", "request", "event", "item", VENDOR_KEY}
_FOLDER_KEYS = {"id", "name", "description", "item"}
_REQUEST_KEYS = {"method", "url", "header", "body", "auth"}
_INFO_KEYS = {"_postman_id", "name", "description", "schema"}
_TOP_KEYS = {"info", "item", "variable"}
_SCRIPT_EVENTS = {"prerequest": "pre_request_script", "test": "test_script"}
# Postman oauth2 parameter -> AuthConfig field
_OAUTH2_KEYS = {
    "accessToken": "access_token",
    "tokenType": "token_type",
    "grant_type": "grant_type",
    "accessTokenUrl": "token_url",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "scope": "scope",
    "audience": "audience",
    "refreshToken": "refresh_token",
}
_COMMON_FIELDS = {"id", "type", "name", "url", "pre_request_script", "test_script", "extras"}


class ImportResult(BaseModel):
    collection: Collection
    warnings: List[CodecWarning] = []


def loads_document(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as ex:
        raise CodecError("document", f"invalid JSON: {ex}") from ex


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise TypeError("expected a scalar value")
    return value if isinstance(value, str) else str(value)


def _description(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        return _text(value.get("content"))
    return _text(value)


# --- Rows, URL, body, auth (pure conversions used both ways) ---

def _rows_out(rows: List[KeyValue], with_type: bool = False) -> List[Dict[str, Any]]:
    out = []
    for row in rows:
        entry: Dict[str, Any] = {"key": row.key, "value": row.value}
        if with_type:
            entry["type"] = "text"
        if not row.enabled:
            entry["disabled"] = True
        out.append(entry)
    return out


def _rows_in(rows: Any) -> List[KeyValue]:
    if rows is None:
        return []
    if isinstance(rows, str):
        # Postman also allows headers as "Key: value" lines
        parsed = []
        for line in rows.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                parsed.append(KeyValue(key=key.strip(), value=value.strip()))
        return parsed
    if not isinstance(rows, list):
        raise TypeError("expected a list of key/value rows")
    result = []
    for row in rows:
        if not isinstance(row, dict):
            raise TypeError("key/value row must be an object")
        value = row.get("src") if row.get("type") == "file" else row.get("value")
        if isinstance(value, list):
            value = value[0] if value else ""
        result.append(KeyValue(key=_text(row.get("key")), value=_text(value), enabled=not row.get("disabled", False)))
    return result


def _url_out(url: str, params: List[KeyValue]) -> Dict[str, Any]:
    enabled = [p for p in params if p.enabled]
    raw = url
    if enabled:
        query = "&".join(f"{p.key}={p.value}" for p in enabled)
        raw = f"{url}&{query}" if "?" in url else f"{url}?{query}"
    out: Dict[str, Any] = {"raw": raw}
    if params:
        out["query"] = _rows_out(params)
    return out


def _url_in(value: Any) -> Tuple[str, List[KeyValue]]:
    if value is None:
        return "", []
    if isinstance(value, str):
        return value, []
    if not isinstance(value, dict):
        raise TypeError("url must be a string or an object")
    raw = _text(value.get("raw"))
    query = value.get("query")
    if isinstance(query, list) and query:
        return raw.split("?", 1)[0], _rows_in(query)
    return raw, []


def _body_out(body: RequestBody) -> Optional[Dict[str, Any]]:
    if body.kind == "json":
        return {"mode": "raw", "raw": body.content, "options": {"raw": {"language": "json"}}}
    if body.kind == "raw":
        return {"mode": "raw", "raw": body.content}
    if body.kind == "x-www-form-urlencoded":
        return {"mode": "urlencoded", "urlencoded": _rows_out(body.form)}
    if body.kind == "form-data":
        return {"mode": "formdata", "formdata": _rows_out(body.form, with_type=True)}
    if body.kind == "binary":
        return {"mode": "file", "file": {"src": body.content}}
    return None


def _body_in(value: Any) -> RequestBody:
    if not value:
        return RequestBody()
    if not isinstance(value, dict):
        raise TypeError("body must be an object")
    mode = value.get("mode")
    if mode == "raw":
        options = value.get("options") or {}
        raw_options = options.get("raw") if isinstance(options, dict) else None
        language = raw_options.get("language") if isinstance(raw_options, dict) else None
        return RequestBody(kind="json" if language == "json" else "raw", content=_text(value.get("raw")))
    if mode == "urlencoded":
        return RequestBody(kind="x-www-form-urlencoded", form=_rows_in(value.get("urlencoded")))
    if mode == "formdata":
        return RequestBody(kind="form-data", form=_rows_in(value.get("formdata")))
    if mode == "file":
        file = value.get("file") or {}
        return RequestBody(kind="binary", content=_text(file.get("src") if isinstance(file, dict) else file))
    return RequestBody()


def _auth_out(auth: AuthConfig) -> Optional[Dict[str, Any]]:
    if auth.type == "basic":
        return {
            "type": "basic",
            "basic": [
                {"key": "username", "value": auth.username, "type": "string"},
                {"key": "password", "value": auth.password, "type": "string"},
            ],
        }
    if auth.type == "bearer":
        return {"type": "bearer", "bearer": [{"key": "token", "value": auth.token, "type": "string"}]}
    if auth.type == "api-key":
        return {
            "type": "apikey",
            "apikey": [
                {"key": "key", "value": auth.key, "type": "string"},
                {"key": "value", "value": auth.value, "type": "string"},
                {"key": "in", "value": auth.add_to, "type": "string"},
            ],
        }
    if auth.type == "oauth2":
        return {
            "type": "oauth2",
            "oauth2": [
                {"key": pm_key, "value": getattr(auth, field), "type": "string"} for pm_key, field in _OAUTH2_KEYS.items()
            ],
        }
    return None


def _auth_params(value: Any) -> Dict[str, str]:
    # v2.1 uses a list of {key, value}; v2.0 used a plain object
    if isinstance(value, dict):
        return {k: _text(v) for k, v in value.items() if not isinstance(v, (dict, list))}
    if isinstance(value, list):
        return {
            _text(row.get("key")): _text(row.get("value"))
            for row in value
            if isinstance(row, dict) and not isinstance(row.get("value"), (dict, list))
        }
    return {}


def _auth_in(value: Any) -> Optional[AuthConfig]:
    """None means the auth type is not one we model."""
    if not value:
        return AuthConfig()
    if not isinstance(value, dict):
        raise TypeError("auth must be an object")
    kind = value.get("type")
    if kind in (None, "noauth"):
        return AuthConfig()
    params = _auth_params(value.get(kind))
    if kind == "basic":
        return AuthConfig(type="basic", username=params.get("username", ""), password=params.get("password", ""))
    if kind == "bearer":
        return AuthConfig(type="bearer", token=params.get("token", ""))
    if kind == "apikey":
        add_to = "query" if params.get("in") == "query" else "header"
        return AuthConfig(type="api-key", key=params.get("key", ""), value=params.get("value", ""), add_to=add_to)
    if kind == "oauth2":
        settings = {field: params[pm_key] for pm_key, field in _OAUTH2_KEYS.items() if pm_key in params}
        return AuthConfig(type="oauth2", **settings)
    return None


def _events_out(request: Request, script_types: Dict[str, str], other_events: List[Any]) -> List[Dict[str, Any]]:
    events = []
    for listen, field in _SCRIPT_EVENTS.items():
        source = getattr(request, field)
        if source is not None:
            script_type = script_types.get(listen, SCRIPT_TYPE)
            events.append({"listen": listen, "script": {"type": script_type, "exec": source.split("\n")}})
    return events + list(other_events)


# --- Export ---

def _request_item_out(request: Request) -> Dict[str, Any]:
    extras = dict(request.extras)
    request_extras = dict(extras.pop("request", {}) or {})
    oauth2_rows = request_extras.pop("oauth2", []) or []
    script_types = extras.pop("script_types", {}) or {}
    other_events = extras.pop("event", []) or []
    item: Dict[str, Any] = {"id": request.id, "name": request.name}

    if isinstance(request, HttpRequest):
        pm_url = _url_out(request.url, request.params)
        pm_request: Dict[str, Any] = {
            "method": request.method,
            "header": _rows_out(request.headers),
            "url": pm_url,
        }
        vendor: Dict[str, Any] = {
            "type": "http",
            "extract_rules": [rule.model_dump() for rule in request.extract_rules],
            "timeout_seconds": request.timeout_seconds,
            "verify_ssl": request.verify_ssl,
        }
        if _url_in(pm_url) != (request.url, request.params):
            vendor["url"] = request.url
            vendor["params"] = [p.model_dump() for p in request.params]
        pm_body = _body_out(request.body)
        if pm_body is not None:
            pm_request["body"] = pm_body
        if _body_in(pm_body) != request.body:
            vendor["body"] = request.body.model_dump()
        pm_auth = _auth_out(request.auth)
        if pm_auth is not None:
            if pm_auth["type"] == "oauth2":
                pm_auth["oauth2"] += oauth2_rows
            pm_request["auth"] = pm_auth
        if _auth_in(pm_auth) != request.auth:
            vendor["auth"] = request.auth.model_dump()
    else:
        pm_request = {"method": "GET", "url": {"raw": request.url}}
        vendor = request.model_dump(exclude=_COMMON_FIELDS)
        vendor["type"] = request.type

    for key, value in request_extras.items():
        pm_request.setdefault(key, value)
    item["request"] = pm_request
    events = _events_out(request, script_types, other_events)
    if events:
        item["event"] = events
    item[VENDOR_KEY] = vendor
    for key, value in extras.items():
        item.setdefault(key, value)
    return item


def _folder_out(folder: CollectionFolder) -> Dict[str, Any]:
    item: Dict[str, Any] = {"id": folder.id, "name": folder.name}
    if folder.description is not None:
        item["description"] = folder.description
    item["item"] = [_item_out(child) for child in folder.items]
    for key, value in folder.extras.items():
        item.setdefault(key, value)
    return item


def _item_out(item) -> Dict[str, Any]:
    if isinstance(item, CollectionFolder):
        return _folder_out(item)
    return _request_item_out(item)


def _variable_out(var: Variable) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"key": var.key, "value": var.value, "type": "secret" if var.secret else "string"}
    if not var.enabled:
        entry["disabled"] = True
    return entry


def export_postman(collection: Collection) -> Dict[str, Any]:
    extras = dict(collection.extras)
    info: Dict[str, Any] = {"_postman_id": collection.id, "name": collection.name}
    if collection.description is not None:
        info["description"] = collection.description
    info["schema"] = POSTMAN_SCHEMA
    for key, value in (extras.pop("info", {}) or {}).items():
        info.setdefault(key, value)

    document: Dict[str, Any] = {"info": info, "item": [_item_out(item) for item in collection.items]}
    if collection.variables:
        document["variable"] = [_variable_out(v) for v in collection.variables]
    for key, value in extras.items():
        document.setdefault(key, value)
    return document


# --- Import ---

class _PostmanImporter:
    def __init__(self):
        self.warnings: List[CodecWarning] = []

    def warn(self, path: str, message: str):
        logger.info("Import warning at %s: %s", path, message)
        self.warnings.append(CodecWarning(path=path, message=message))

    def items(self, raw_items: List[Any], path: str) -> List[Any]:
        result = []
        for index, raw in enumerate(raw_items):
            item_path = f"{path}[{index}]"
            try:
                result.append(self.item(raw, item_path))
            except (TypeError, ValueError, KeyError, AttributeError) as ex:
                self.warn(item_path, f"skipped: {ex}")
        return result

    def item(self, raw: Any, path: str):
        if not isinstance(raw, dict):
            raise TypeError("item must be an object")
        if "item" in raw:
            return self.folder(raw, path)
        if "request" in raw:
            return self.request(raw, path)
        raise ValueError("item has neither 'request' nor 'item'")

    def folder(self, raw: Dict[str, Any], path: str) -> CollectionFolder:
        children = raw.get("item")
        if not isinstance(children, list):
            raise TypeError("folder 'item' must be a list")
        return CollectionFolder(
            id=_text(raw.get("id")) or new_id(),
            name=_text(raw.get("name")),
            description=_description(raw.get("description")),
            items=self.items(children, f"{path}.item"),
            extras={k: v for k, v in raw.items() if k not in _FOLDER_KEYS},
        )

    def scripts(self, events: Any, path: str) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Script fields for the request, plus extras that keep the rest of the events."""
        found: Dict[str, str] = {}
        script_types: Dict[str, str] = {}
        others: List[Any] = []
        if not events:
            return found, {}
        if not isinstance(events, list):
            raise TypeError("event must be a list")
        for event in events:
            listen = event.get("listen") if isinstance(event, dict) else None
            if listen not in _SCRIPT_EVENTS:
                self.warn(path, f"event '{listen}' is not run and is kept as-is")
                others.append(event)
                continue
            script = event.get("script") or {}
            source = script.get("exec", "")
            source = "\n".join(_text(line) for line in source) if isinstance(source, list) else _text(source)
            script_type = script.get("type")
            if script_type not in (None, SCRIPT_TYPE):
                self.warn(path, f"{listen} script is {script_type} and is kept as text")
                script_types[listen] = _text(script_type)
            found[_SCRIPT_EVENTS[listen]] = source
        extras: Dict[str, Any] = {}
        if script_types:
            extras["script_types"] = script_types
        if others:
            extras["event"] = others
        return found, extras

    def request(self, raw: Dict[str, Any], path: str) -> Request:
        vendor = raw.get(VENDOR_KEY) or {}
        if not isinstance(vendor, dict):
            raise TypeError(f"{VENDOR_KEY} must be an object")
        pm_request = raw["request"]
        if isinstance(pm_request, str):
            pm_request = {"url": pm_request}
        if not isinstance(pm_request, dict):
            raise TypeError("request must be an object or a URL string")

        kind = vendor.get("type", "http")
        url, params = _url_in(pm_request.get("url"))
        fields: Dict[str, Any] = {
            "type": kind,
            "id": _text(raw.get("id")) or new_id(),
            "name": _text(raw.get("name")) or "Untitled",
            "url": url,
        }
        scripts, event_extras = self.scripts(raw.get("event"), path)
        fields.update(scripts)

        extras: Dict[str, Any] = {k: v for k, v in raw.items() if k not in _ITEM_KEYS}
        extras.update(event_extras)
        request_extras = {k: v for k, v in pm_request.items() if k not in _REQUEST_KEYS}

        if kind == "http":
            fields["method"] = _text(pm_request.get("method")) or "GET"
            fields["headers"] = _rows_in(pm_request.get("header"))
            fields["params"] = params
            body = pm_request.get("body")
            if isinstance(body, dict) and body.get("mode") not in (None, "raw", "urlencoded", "formdata", "file"):
                self.warn(path, f"body mode '{body.get('mode')}' is not supported")
                request_extras["body"] = body
            fields["body"] = _body_in(body)
            auth = _auth_in(pm_request.get("auth"))
            if auth is None:
                self.warn(path, f"auth type '{pm_request['auth'].get('type')}' is not supported")
                request_extras["auth"] = pm_request["auth"]
                auth = AuthConfig()
            if auth.type == "oauth2" and isinstance(pm_request["auth"].get("oauth2"), list):
                # Flow settings we do not model (auth URL, PKCE, ...) go back out on export
                unknown = [
                    row
                    for row in pm_request["auth"]["oauth2"]
                    if not isinstance(row, dict) or row.get("key") not in _OAUTH2_KEYS
                ]
                if unknown:
                    request_extras["oauth2"] = unknown
            fields["auth"] = auth
            fields["extract_rules"] = [ExtractionRule.model_validate(r) for r in vendor.get("extract_rules", [])]
            for key in ("timeout_seconds", "verify_ssl", "url", "params", "body", "auth"):
                if key in vendor:
                    fields[key] = vendor[key]
        else:
            fields.update({k: v for k, v in vendor.items() if k not in _COMMON_FIELDS})

        if request_extras:
            extras["request"] = request_extras
        fields["extras"] = extras
        return RequestAdapter.validate_python(fields)

    def variables(self, raw: Any) -> List[Variable]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            self.warn("variable", "expected a list; variables skipped")
            return []
        result = []
        for index, entry in enumerate(raw):
            try:
                if not isinstance(entry, dict) or not entry.get("key"):
                    raise ValueError("variable needs a key")
                result.append(
                    Variable(
                        key=_text(entry["key"]),
                        value=_text(entry.get("value")),
                        enabled=not entry.get("disabled", False),
                        secret=entry.get("type") == "secret",
                    )
                )
            except (TypeError, ValueError) as ex:
                self.warn(f"variable[{index}]", f"skipped: {ex}")
        return result


def import_postman(document: Any) -> ImportResult:
    if not isinstance(document, dict):
        raise CodecError("document", "expected a JSON object")
    info = document.get("info")
    if not isinstance(info, dict):
        raise CodecError("info", "missing or not an object")
    if info.get("schema") not in POSTMAN_SCHEMAS:
        raise CodecError("info.schema", f"unsupported schema {info.get('schema')!r}")
    items = document.get("item")
    if not isinstance(items, list):
        raise CodecError("item", "missing or not a list")

    importer = _PostmanImporter()
    extras: Dict[str, Any] = {k: v for k, v in document.items() if k not in _TOP_KEYS}
    info_extras = {k: v for k, v in info.items() if k not in _INFO_KEYS}
    if info_extras:
        extras["info"] = info_extras
    collection = Collection(
        id=_text(info.get("_postman_id")) or new_id(),
        name=_text(info.get("name")) or "Imported Collection",
        description=_description(info.get("description")),
        variables=importer.variables(document.get("variable")),
        items=importer.items(items, "item"),
        extras=extras,
    )
    return ImportResult(collection=collection, warnings=importer.warnings)


def export_native(collection: Collection) -> Dict[str, Any]:
    return {
        "format": NATIVE_FORMAT,
        "version": NATIVE_VERSION,
        "collection": collection.model_dump(mode="json"),
    }


def import_native(document: Any) -> ImportResult:
    if not isinstance(document, dict):
        raise CodecError("document", "expected a JSON object")
    if document.get("format") != NATIVE_FORMAT:
        raise CodecError("format", f"expected '{NATIVE_FORMAT}'")
    if document.get("version") != NATIVE_VERSION:
        raise CodecError("version", f"unsupported version {document.get('version')!r}")
    try:
        collection = Collection.model_validate(document.get("collection"))
    except ValueError as ex:
        raise CodecError("collection", str(ex)) from ex
    return ImportResult(collection=collection)
