"""
Script runner executed in a separate interpreter by `SubprocessSandbox`.

Reads one JSON message from stdin:
    {"source": str, "filename": str, "context": {phase, request, response, variables}}
and streams JSON lines to stdout, one per event:
    {"event": "log", "line": "[INFO] ..."}
    {"event": "test", "name": ..., "passed": bool, "error": str | null}
    {"event": "set", "key": ..., "value": ...} / {"event": "unset", "key": ...}
    {"event": "error", "message": ...} or {"event": "done"}

This file must stay importable on its own (stdlib + jmespath only); it is run
by path with `python -I`, so the courier package is not on sys.path.
"""
import base64
import datetime
import hashlib
import json
import math
import re
import sys
import types
import uuid

import jmespath

# Longest log line, test name or error message sent back to the parent
MAX_TEXT = 64 * 1024
_TEXT_FIELDS = ("line", "name", "error", "message")


def _clip(text: str) -> str:
    if len(text) <= MAX_TEXT:
        return text
    return f"{text[:MAX_TEXT]}... [{len(text) - MAX_TEXT} characters truncated]"


class _Emitter:
    def __init__(self, stream):
        self._stream = stream

    def emit(self, event: dict):
        event = {k: _clip(v) if k in _TEXT_FIELDS and isinstance(v, str) else v for k, v in event.items()}
        self._stream.write(json.dumps(event) + "\n")
        self._stream.flush()


def _format_args(args) -> str:
    parts = []
    for arg in args:
        if isinstance(arg, (dict, list)):
            try:
                parts.append(json.dumps(arg, indent=2))
                continue
            except (TypeError, ValueError):
                pass
        parts.append(str(arg))
    return " ".join(parts)


class Console:
    def __init__(self, emitter: _Emitter):
        self._emitter = emitter

    def _write(self, prefix: str, args):
        text = _format_args(args)
        self._emitter.emit({"event": "log", "line": f"{prefix} {text}" if prefix else text})

    def log(self, *args):
        self._write("", args)

    def info(self, *args):
        self._write("[INFO]", args)

    def warn(self, *args):
        self._write("[WARN]", args)

    warning = warn

    def error(self, *args):
        self._write("[ERROR]", args)

    def debug(self, *args):
        self._write("[DEBUG]", args)


class Variables:
    def __init__(self, values: dict, emitter: _Emitter):
        self._values = dict(values)
        self._emitter = emitter

    def get(self, key, default=None):
        return self._values.get(key, default)

    def set(self, key, value):
        value = "" if value is None else str(value)
        self._values[str(key)] = value
        self._emitter.emit({"event": "set", "key": str(key), "value": value})

    def unset(self, key):
        self._values.pop(key, None)
        self._emitter.emit({"event": "unset", "key": str(key)})

    def has(self, key) -> bool:
        return key in self._values

    def to_object(self) -> dict:
        return dict(self._values)


class Record:
    """Read-only attribute view over a dict."""

    def __init__(self, data: dict):
        self._data = dict(data)

    def __getattr__(self, name):
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __getitem__(self, name):
        return self._data[name]

    def get(self, name, default=None):
        return self._data.get(name, default)

    def to_object(self) -> dict:
        return dict(self._data)


def _request_view(request: dict) -> Record:
    data = dict(request)
    for field in ("headers", "metadata", "params"):
        rows = request.get(field)
        if isinstance(rows, list):
            data[field] = {r["key"]: r["value"] for r in rows if r.get("enabled", True) and r.get("key")}
    body = request.get("body")
    if isinstance(body, dict):
        data["body"] = body.get("content", "")
    return Record(data)


class ResponseView:
    def __init__(self, data: dict):
        self.status = data.get("status", 0)
        self.code = self.status
        self.status_text = data.get("status_text", "")
        self.headers = dict(data.get("headers") or {})
        self.body = data.get("body", "")
        self.time = data.get("time", 0)
        self.size = data.get("size", 0)

    def text(self) -> str:
        return self.body

    def json(self):
        try:
            return json.loads(self.body)
        except ValueError:
            raise ValueError("Response body is not valid JSON") from None

    def search(self, expression: str):
        return jmespath.search(expression, self.json())


_MISSING = object()

_TYPE_NAMES = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
    "null": (type(None),),
}


def _show(value) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)


class Expectation:
    """Chai-style assertions. Use `not_` for negation."""

    def __init__(self, value, response=None, negate=False):
        self._value = value
        self._response = response
        self._negate = negate

    # Language chains
    to = be = been = is_ = that = which = and_ = has = have = with_ = property(lambda self: self)

    @property
    def not_(self):
        return Expectation(self._value, self._response, not self._negate)

    def _check(self, ok: bool, message: str, negated_message: str):
        if self._negate:
            ok = not ok
            message = negated_message
        if not ok:
            raise AssertionError(message)

    def equal(self, expected):
        v = self._value
        self._check(
            v == expected and type(v) is type(expected) or (v is expected),
            f"Expected {_show(v)} to equal {_show(expected)}",
            f"Expected {_show(v)} not to equal {_show(expected)}",
        )

    equals = eq = equal

    def eql(self, expected):
        self._check(
            self._value == expected,
            f"Expected {_show(self._value)} to deeply equal {_show(expected)}",
            f"Expected {_show(self._value)} not to deeply equal {_show(expected)}",
        )

    def above(self, n):
        v = self._value
        ok = isinstance(v, (int, float)) and not isinstance(v, bool) and v > n
        self._check(ok, f"Expected {_show(v)} to be above {n}", f"Expected {_show(v)} not to be above {n}")

    def below(self, n):
        v = self._value
        ok = isinstance(v, (int, float)) and not isinstance(v, bool) and v < n
        self._check(ok, f"Expected {_show(v)} to be below {n}", f"Expected {_show(v)} not to be below {n}")

    def a(self, type_name: str):
        expected = _TYPE_NAMES.get(type_name)
        if expected is None:
            raise ValueError(f"Unknown type name: {type_name}")
        v = self._value
        ok = isinstance(v, expected) and not (type_name == "number" and isinstance(v, bool))
        self._check(
            ok,
            f"Expected {_show(v)} to be a {type_name}, but got {type(v).__name__}",
            f"Expected {_show(v)} not to be a {type_name}",
        )

    an = a

    def true(self):
        self._check(self._value is True, f"Expected {_show(self._value)} to be true", "Expected value not to be true")

    def false(self):
        self._check(self._value is False, f"Expected {_show(self._value)} to be false", "Expected value not to be false")

    def null(self):
        self._check(self._value is None, f"Expected {_show(self._value)} to be null", "Expected value not to be null")

    def ok(self):
        self._check(bool(self._value), f"Expected {_show(self._value)} to be truthy", "Expected value to be falsy")

    def include(self, item):
        v = self._value
        if not isinstance(v, (str, list, tuple, dict)):
            raise AssertionError("Include assertion requires string, array or object")
        self._check(
            item in v,
            f"Expected {_show(v)} to include {_show(item)}",
            f"Expected {_show(v)} not to include {_show(item)}",
        )

    contain = includes = contains = include

    def property(self, name, value=_MISSING):
        v = self._value
        present = isinstance(v, dict) and name in v
        if value is _MISSING or not present:
            self._check(present, f'Expected object to have property "{name}"', f'Expected object not to have property "{name}"')
            return
        self._check(
            v[name] == value,
            f'Expected property "{name}" to equal {_show(value)}, got {_show(v[name])}',
            f'Expected property "{name}" not to equal {_show(value)}',
        )

    def length(self, n):
        v = self._value
        try:
            actual = len(v)
        except TypeError:
            raise AssertionError(f"Expected {_show(v)} to have a length") from None
        self._check(actual == n, f"Expected length {n}, got {actual}", f"Expected length not to be {n}")

    length_of = length

    def status(self, code):
        actual = self._response.status if self._response is not None else None
        self._check(actual == code, f"Expected status {code}, got {actual}", f"Expected status not to be {code}")


class Pm:
    def __init__(self, context: dict, emitter: _Emitter):
        self._emitter = emitter
        self.variables = Variables(context.get("variables") or {}, emitter)
        self.environment = self.variables
        self.request = _request_view(context.get("request") or {})
        response = context.get("response")
        self.response = ResponseView(response) if response is not None else None
        self.phase = context.get("phase")

    def expect(self, value):
        return Expectation(value, self.response)

    def test(self, name, fn=None):
        if fn is None:
            def decorator(func):
                self._run_test(name, func)
                return func
            return decorator
        self._run_test(name, fn)

    def _run_test(self, name, fn):
        try:
            fn()
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            self._emitter.emit({"event": "test", "name": str(name), "passed": False, "error": message})
        else:
            self._emitter.emit({"event": "test", "name": str(name), "passed": True, "error": None})


_SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float", "format",
    "frozenset", "hasattr", "hash", "int", "isinstance", "issubclass", "iter", "len", "list",
    "map", "max", "min", "next", "pow", "range", "repr", "reversed", "round", "set", "slice",
    "sorted", "str", "sum", "tuple", "zip", "Exception", "ValueError", "TypeError", "KeyError",
    "IndexError", "AttributeError", "AssertionError", "ZeroDivisionError", "RuntimeError",
)


def _namespace(pm: Pm, console: Console) -> dict:
    import builtins

    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTINS}
    safe["print"] = console.log
    return {
        "__builtins__": safe,
        "__name__": "__script__",
        "pm": pm,
        "console": console,
        "expect": pm.expect,
        "json": types.SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "math": math,
        "re": types.SimpleNamespace(search=re.search, match=re.match, fullmatch=re.fullmatch,
                                    findall=re.findall, sub=re.sub, split=re.split),
        "base64": types.SimpleNamespace(b64encode=base64.b64encode, b64decode=base64.b64decode),
        "btoa": lambda s: base64.b64encode(str(s).encode()).decode(),
        "atob": lambda s: base64.b64decode(str(s)).decode(),
        "hashlib": types.SimpleNamespace(md5=hashlib.md5, sha1=hashlib.sha1, sha256=hashlib.sha256),
        "uuid4": lambda: str(uuid.uuid4()),
        "now": lambda: datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


def _describe(exc: BaseException) -> str:
    if isinstance(exc, SyntaxError):
        return f"SyntaxError: {exc.msg} (line {exc.lineno})"
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def main() -> int:
    out = sys.stdout
    # Stray writes from the script must not corrupt the event stream
    sys.stdout = sys.stderr
    emitter = _Emitter(out)
    try:
        message = json.loads(sys.stdin.read())
    except ValueError as exc:
        emitter.emit({"event": "error", "message": f"Invalid runner message: {exc}"})
        return 2

    console = Console(emitter)
    pm = Pm(message.get("context") or {}, emitter)
    try:
        code = compile(message.get("source", ""), message.get("filename", "<script>"), "exec")
        exec(code, _namespace(pm, console))
    except Exception as exc:
        emitter.emit({"event": "error", "message": _describe(exc)})
        return 1
    emitter.emit({"event": "done"})
    return 0


if __name__ == "__main__":
    sys.exit(main())
