from __future__ import annotations
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from time import time as now
import uuid

from courier.core.errors import SendError


def new_id() -> str:
    return str(uuid.uuid4())


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
BodyKind = Literal["none", "json", "raw", "form-data", "x-www-form-urlencoded", "binary"]
RequestKind = Literal["http", "websocket", "sse", "grpc"]


# --- Request building blocks ---

class KeyValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str = ""
    value: str = ""
    enabled: bool = True


class RequestBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: BodyKind = "none"
    content: str = ""  # raw text, or a file path for binary bodies
    form: List[KeyValue] = []  # rows for form-data / x-www-form-urlencoded


class AuthConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["none", "basic", "bearer", "api-key", "oauth2"] = "none"
    username: str = ""
    password: str = ""
    token: str = ""
    key: str = ""  # api-key header / query name
    value: str = ""
    add_to: Literal["header", "query"] = "header"

    # OAuth 2.0: the token in use and how to fetch a new one
    access_token: str = ""
    token_type: str = ""  # empty means Bearer
    grant_type: str = "client_credentials"
    token_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    scope: str = ""
    audience: str = ""
    refresh_token: str = ""

    def oauth2_header(self) -> str:
        return f"{self.token_type or 'Bearer'} {self.access_token}"


class ExtractionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    source_path: str  # JMESPath, e.g. "body.data.token"
    target_variable: str  # e.g. "access_token"


# --- Request union ---

class _RequestBase(BaseModel):
    """
    Fields shared by every protocol variant. Requests are immutable: edits
    produce a new object (see `replace_request`), so a reader never sees a
    half-updated request. Identity is the (type, id) pair.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    name: str = "Untitled"
    url: str = ""
    pre_request_script: Optional[str] = None
    test_script: Optional[str] = None
    # Opaque fields carried over from an imported interchange document
    extras: Dict[str, Any] = {}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _RequestBase):
            return NotImplemented
        return self.type == other.type and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.type, self.id))


class HttpRequest(_RequestBase):
    type: Literal["http"] = "http"
    method: HttpMethod = "GET"
    headers: List[KeyValue] = []
    params: List[KeyValue] = []
    body: RequestBody = RequestBody()
    auth: AuthConfig = AuthConfig()
    extract_rules: List[ExtractionRule] = []

    # Settings
    timeout_seconds: float = 30
    verify_ssl: bool = False

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class WebSocketRequest(_RequestBase):
    type: Literal["websocket"] = "websocket"
    headers: List[KeyValue] = []  # handshake headers


class SseRequest(_RequestBase):
    type: Literal["sse"] = "sse"
    headers: List[KeyValue] = []


class GrpcRequest(_RequestBase):
    type: Literal["grpc"] = "grpc"
    proto_file: Optional[str] = None
    reflection: bool = False
    service_name: str = ""
    method_name: str = ""
    message: str = "{}"  # JSON text
    metadata: List[KeyValue] = []


Request = Annotated[
    Union[HttpRequest, WebSocketRequest, SseRequest, GrpcRequest],
    Field(discriminator="type"),
]
RequestAdapter: TypeAdapter = TypeAdapter(Request)


def new_request(kind: str = "http", **fields: Any) -> Request:
    return RequestAdapter.validate_python({**fields, "type": kind})


def replace_request(request: Request, **changes: Any) -> Request:
    """Copy-on-write edit; the result is validated like a fresh request."""
    if "type" in changes and changes["type"] != request.type:
        raise ValueError("a request cannot change its protocol type")
    data = request.model_dump()
    data.update(changes)
    return type(request).model_validate(data)


def duplicate_request(request: Request) -> Request:
    return request.model_copy(update={"id": new_id()}, deep=True)


# --- Environment Models ---

class Scope(str, Enum):
    LOCAL = "local"
    ENVIRONMENT = "environment"
    COLLECTION = "collection"
    GLOBAL = "global"


class Variable(BaseModel):
    key: str
    value: str = ""
    enabled: bool = True
    secret: bool = False

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


class Environment(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "New Environment"
    scope: Scope = Scope.ENVIRONMENT
    variables: List[Variable] = []


# --- Script Models ---

class TestResult(BaseModel):
    model_config = ConfigDict(frozen=True)
    __test__ = False  # not a pytest class

    name: str
    passed: bool
    error: Optional[str] = None


class ScriptExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    console_logs: List[str] = []
    error: Optional[str] = None
    duration: float = 0  # ms
    test_results: List[TestResult] = []
    # name -> new value; None means the script unset the variable
    variable_updates: Dict[str, Optional[str]] = {}


# --- Response Models ---

class RawResponse(BaseModel):
    """What a transport hands back before scripts and capture run."""

    model_config = ConfigDict(frozen=True)

    status: int
    status_text: str = ""
    headers: Dict[str, str] = {}
    body: str = ""
    size: int = 0  # bytes
    time: float = 0  # ms


class Response(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    request_id: str
    status: int
    status_text: str = ""
    headers: Dict[str, str] = {}
    body: str = ""
    size: int = 0
    time: float = 0
    timestamp: float = Field(default_factory=now)
    pre_request_script_result: Optional[ScriptExecutionResult] = None
    test_script_result: Optional[ScriptExecutionResult] = None
    captured_variables: Dict[str, Any] = {}
    capture_errors: List[str] = []


# --- Tab ---

class Tab(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "Untitled"
    request: Request
    response: Optional[Response] = None
    last_error: Optional[SendError] = None
    is_loading: bool = False
    is_dirty: bool = False
    collection_request_id: Optional[str] = None  # back-reference, not ownership
    local_variables: Dict[str, str] = {}


# --- Collection Models ---

class CollectionFolder(BaseModel):
    type: Literal["folder"] = "folder"
    id: str = Field(default_factory=new_id)
    name: str = "New Folder"
    description: Optional[str] = None
    items: List[CollectionItem] = []  # Recursive structure
    extras: Dict[str, Any] = {}


CollectionItem = Annotated[
    Union[CollectionFolder, HttpRequest, WebSocketRequest, SseRequest, GrpcRequest],
    Field(discriminator="type"),
]


class Collection(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "My Collection"
    description: Optional[str] = None
    variables: List[Variable] = []
    items: List[CollectionItem] = []
    extras: Dict[str, Any] = {}


class CollectionMeta(BaseModel):
    id: str
    name: str
    updated_at: float


# --- History ---

class HistoryEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    request: Request
    response: Optional[Response] = None
    timestamp: float = Field(default_factory=now)


CollectionFolder.model_rebuild()
Collection.model_rebuild()
