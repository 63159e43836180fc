import random
import re
import time
import uuid
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

from courier.core.errors import ResolutionWarning
from courier.models import (
    Environment,
    GrpcRequest,
    HttpRequest,
    KeyValue,
    Request,
    Scope,
    SseRequest,
    Variable,
    WebSocketRequest,
)

# Optional leading backslash marks an escaped placeholder: \{{name}} -> {{name}}
_PLACEHOLDER = re.compile(r"(\\)?\{\{\s*([^{}]+?)\s*\}\}")

PRECEDENCE = (Scope.LOCAL, Scope.ENVIRONMENT, Scope.COLLECTION, Scope.GLOBAL)

_DYNAMIC: Dict[str, Callable[[], str]] = {
    "$uuid": lambda: str(uuid.uuid4()),
    "$timestamp": lambda: str(int(time.time())),
    "$randomInt": lambda: str(random.randint(1, 10000)),
}

_UNSET = object()

Layer = Union[None, Environment, Iterable[Variable], Mapping[str, Optional[str]]]


def _as_mapping(layer: Layer) -> Dict[str, object]:
    if layer is None:
        return {}
    if isinstance(layer, Environment):
        layer = layer.variables
    if isinstance(layer, Mapping):
        return {k: (_UNSET if v is None else str(v)) for k, v in layer.items()}
    values: Dict[str, object] = {}
    for var in layer:
        # Last enabled definition of a key wins within one layer
        if var.enabled and var.key:
            values[var.key] = var.value
    return values


class VariableScopes:
    """
    Immutable snapshot of the four variable layers used by one send.
    Environment edits made after the snapshot are not visible to it.
    """

    def __init__(
        self,
        local: Layer = None,
        environment: Layer = None,
        collection: Layer = None,
        globals_: Layer = None,
    ):
        self._layers = {
            Scope.LOCAL: _as_mapping(local),
            Scope.ENVIRONMENT: _as_mapping(environment),
            Scope.COLLECTION: _as_mapping(collection),
            Scope.GLOBAL: _as_mapping(globals_),
        }

    @classmethod
    def snapshot(
        cls,
        environment: Layer = None,
        collection_variables: Layer = (),
        globals_: Layer = None,
        local: Optional[Mapping[str, Optional[str]]] = None,
    ) -> "VariableScopes":
        # Layers are copied into plain dicts here, so later environment
        # edits only affect the next send
        return cls(local=local, environment=environment, collection=collection_variables, globals_=globals_)

    def lookup(self, name: str) -> Optional[str]:
        for scope in PRECEDENCE:
            layer = self._layers[scope]
            if name in layer:
                value = layer[name]
                # An unset in a higher layer hides lower definitions
                return None if value is _UNSET else value
        return None

    def source_of(self, name: str) -> Optional[Scope]:
        for scope in PRECEDENCE:
            if name in self._layers[scope]:
                return None if self._layers[scope][name] is _UNSET else scope
        return None

    def with_local(self, updates: Mapping[str, Optional[str]]) -> "VariableScopes":
        """Return a new snapshot with `updates` merged into the local layer."""
        clone = VariableScopes.__new__(VariableScopes)
        clone._layers = {scope: dict(values) for scope, values in self._layers.items()}
        clone._layers[Scope.LOCAL].update(_as_mapping(updates))
        return clone

    def merged(self) -> Dict[str, str]:
        """Flattened view, highest precedence first."""
        result: Dict[str, str] = {}
        hidden = set()
        for scope in PRECEDENCE:
            for key, value in self._layers[scope].items():
                if key in result or key in hidden:
                    continue
                if value is _UNSET:
                    hidden.add(key)
                else:
                    result[key] = value
        return result

    def layer(self, scope: Scope) -> Dict[str, str]:
        return {k: v for k, v in self._layers[scope].items() if v is not _UNSET}


class Resolution(NamedTuple):
    text: str
    warnings: List[ResolutionWarning]


def resolve(template: Optional[str], scopes: VariableScopes) -> Resolution:
    """
    Substitute every {{name}} in one pass. Substituted values are never
    re-scanned; unresolved names stay in place and produce a warning.
    """
    if not template:
        return Resolution(template or "", [])
    warnings: List[ResolutionWarning] = []

    def _substitute(match: "re.Match[str]") -> str:
        escaped, name = match.group(1), match.group(2)
        if escaped:
            return match.group(0)[1:]
        value = scopes.lookup(name)
        if value is not None:
            return value
        if name in _DYNAMIC and scopes.source_of(name) is None:
            return _DYNAMIC[name]()
        warnings.append(ResolutionWarning(variable=name))
        return match.group(0)

    return Resolution(_PLACEHOLDER.sub(_substitute, template), warnings)


def find_variables(template: Optional[str]) -> List[str]:
    names: List[str] = []
    for match in _PLACEHOLDER.finditer(template or ""):
        if match.group(1):
            continue
        if match.group(2) not in names:
            names.append(match.group(2))
    return names


class _Collector:
    def __init__(self, scopes: VariableScopes):
        self.scopes = scopes
        self.warnings: List[ResolutionWarning] = []
        self._seen = set()

    def text(self, template: Optional[str]) -> str:
        resolution = resolve(template, self.scopes)
        for warning in resolution.warnings:
            if warning.variable not in self._seen:
                self._seen.add(warning.variable)
                self.warnings.append(warning)
        return resolution.text

    def pairs(self, rows: List[KeyValue]) -> List[KeyValue]:
        # Keys are names, not templates: only values are resolved
        return [row.model_copy(update={"value": self.text(row.value)}) for row in rows]


def resolve_request(request: Request, scopes: VariableScopes) -> Tuple[Request, List[ResolutionWarning]]:
    """Resolve every templated value of a request snapshot."""
    r = _Collector(scopes)
    match request:
        case HttpRequest():
            body = request.body.model_copy(
                update={"content": r.text(request.body.content), "form": r.pairs(request.body.form)}
            )
            auth = request.auth.model_copy(
                update={
                    "username": r.text(request.auth.username),
                    "password": r.text(request.auth.password),
                    "token": r.text(request.auth.token),
                    "value": r.text(request.auth.value),
                    "access_token": r.text(request.auth.access_token),
                    "token_url": r.text(request.auth.token_url),
                    "client_id": r.text(request.auth.client_id),
                    "client_secret": r.text(request.auth.client_secret),
                    "scope": r.text(request.auth.scope),
                    "audience": r.text(request.auth.audience),
                    "refresh_token": r.text(request.auth.refresh_token),
                }
            )
            changes = {
                "url": r.text(request.url),
                "headers": r.pairs(request.headers),
                "params": r.pairs(request.params),
                "body": body,
                "auth": auth,
            }
        case WebSocketRequest() | SseRequest():
            changes = {"url": r.text(request.url), "headers": r.pairs(request.headers)}
        case GrpcRequest():
            changes = {
                "url": r.text(request.url),
                "metadata": r.pairs(request.metadata),
                "message": r.text(request.message),
                "proto_file": r.text(request.proto_file) if request.proto_file else request.proto_file,
            }
        case _:
            raise TypeError(f"Unsupported request type: {type(request).__name__}")
    return request.model_copy(update=changes), r.warnings
