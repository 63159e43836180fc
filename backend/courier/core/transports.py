import asyncio
import base64
import json
import logging
import time
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from courier.core.errors import TransportError
from courier.models import HttpRequest, RawResponse, Request, SseRequest

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends one fully resolved request and returns the raw response."""

    async def send(self, request: Request) -> RawResponse:
        ...


class TransportRegistry:
    def __init__(self, transports: Optional[Dict[str, Transport]] = None):
        self._transports: Dict[str, Transport] = dict(transports or {})

    def register(self, kind: str, transport: Transport):
        self._transports[kind] = transport

    def get(self, kind: str) -> Optional[Transport]:
        return self._transports.get(kind)

    def kinds(self) -> List[str]:
        return list(self._transports)


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def _raw_headers(response: httpx.Response) -> Dict[str, str]:
    # httpx keeps the header names as received in .raw
    headers: Dict[str, str] = {}
    for raw_key, raw_value in response.headers.raw:
        key = raw_key.decode("latin-1")
        value = raw_value.decode("latin-1")
        headers[key] = f"{headers[key]}, {value}" if key in headers else value
    return headers


def _has_header(headers: List[Tuple[str, str]], name: str) -> bool:
    name = name.lower()
    return any(k.lower() == name for k, _ in headers)


def _set_header(headers: List[Tuple[str, str]], name: str, value: str) -> List[Tuple[str, str]]:
    kept = [(k, v) for k, v in headers if k.lower() != name.lower()]
    kept.append((name, value))
    return kept


def build_http_args(req: HttpRequest) -> Dict[str, Any]:
    """Translate a resolved HttpRequest into httpx.request() keyword arguments."""
    headers = [(h.key.strip(), h.value) for h in req.headers if h.enabled and h.key.strip()]
    params = [(p.key.strip(), p.value) for p in req.params if p.enabled and p.key.strip()]

    # Auth injection
    auth = req.auth
    if auth.type == "basic":
        token = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        headers = _set_header(headers, "Authorization", f"Basic {token}")
    elif auth.type == "bearer":
        headers = _set_header(headers, "Authorization", f"Bearer {auth.token}")
    elif auth.type == "oauth2" and auth.access_token:
        headers = _set_header(headers, "Authorization", auth.oauth2_header())
    elif auth.type == "api-key" and auth.key:
        if auth.add_to == "query":
            params.append((auth.key, auth.value))
        else:
            headers = _set_header(headers, auth.key, auth.value)

    args: Dict[str, Any] = {"method": req.method, "url": req.url}
    body = req.body
    if body.kind in ("json", "raw") and body.content:
        args["content"] = body.content.encode("utf-8")
        if body.kind == "json" and not _has_header(headers, "Content-Type"):
            headers.append(("Content-Type", "application/json"))
    elif body.kind == "x-www-form-urlencoded":
        rows = [(r.key, r.value) for r in body.form if r.enabled and r.key.strip()]
        if rows:
            args["data"] = dict(rows)
        elif body.content:
            args["content"] = body.content.encode("utf-8")
        if not _has_header(headers, "Content-Type"):
            headers.append(("Content-Type", "application/x-www-form-urlencoded"))
    elif body.kind == "form-data":
        rows = [(r.key, r.value) for r in body.form if r.enabled and r.key.strip()]
        if rows:
            # (None, value) parts make httpx send multipart fields without filenames
            args["files"] = [(key, (None, value.encode("utf-8"))) for key, value in rows]
    elif body.kind == "binary" and body.content:
        try:
            args["content"] = Path(body.content).read_bytes()
        except OSError as ex:
            raise TransportError(f"File read error for binary body: {ex}") from ex

    if params:
        args["params"] = params
    args["headers"] = headers
    return args


class HttpxTransport:
    """Default HTTP transport. `transport` lets callers swap the httpx backend."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, follow_redirects: bool = True):
        self._transport = transport
        self.follow_redirects = follow_redirects

    async def send(self, request: Request) -> RawResponse:
        if not isinstance(request, HttpRequest):
            raise TransportError(f"HTTP transport cannot send {request.type} requests")
        args = build_http_args(request)
        start_time = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                verify=request.verify_ssl,
                transport=self._transport,
                follow_redirects=self.follow_redirects,
                timeout=request.timeout_seconds,
            ) as client:
                response = await client.request(**args)
                await response.aread()  # Load body into memory
        except httpx.TimeoutException as ex:
            raise TransportError(f"Request timed out after {request.timeout_seconds} s") from ex
        except httpx.HTTPError as ex:
            raise TransportError(str(ex) or type(ex).__name__) from ex
        duration = (time.perf_counter() - start_time) * 1000

        try:
            body = response.text
        except (UnicodeDecodeError, LookupError):
            body = (response.content or b"").decode("utf-8", errors="replace")
        return RawResponse(
            status=response.status_code,
            status_text=response.reason_phrase or reason_phrase(response.status_code),
            headers=_raw_headers(response),
            body=body,
            size=len(response.content or b""),
            time=duration,
        )


class SseEventParser:
    """Incremental text/event-stream parser (one line at a time)."""

    def __init__(self):
        self._data: List[str] = []
        self._event = ""
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[Dict[str, Any]]:
        if line == "":
            if not self._data:
                self._event = ""
                return None
            event = {"id": self._id, "event": self._event or "message", "data": "\n".join(self._data)}
            self._data = []
            self._event = ""
            return event
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        return None


class HttpxSseTransport:
    """
    Subscribes to an event stream and collects events until the stream ends,
    `max_events` arrive or `listen_seconds` pass. The body is a JSON list of
    {id, event, data} objects.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_events: int = 100,
        listen_seconds: float = 10.0,
    ):
        self._transport = transport
        self.max_events = max_events
        self.listen_seconds = listen_seconds

    async def send(self, request: Request) -> RawResponse:
        if not isinstance(request, SseRequest):
            raise TransportError(f"SSE transport cannot send {request.type} requests")
        headers = [(h.key.strip(), h.value) for h in request.headers if h.enabled and h.key.strip()]
        if not _has_header(headers, "Accept"):
            headers.append(("Accept", "text/event-stream"))

        events: List[Dict[str, Any]] = []
        start_time = time.perf_counter()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=httpx.Timeout(10.0, read=None)) as client:
                async with client.stream("GET", request.url, headers=headers) as response:
                    try:
                        await asyncio.wait_for(self._collect(response, events), self.listen_seconds)
                    except asyncio.TimeoutError:
                        logger.debug("SSE listen window elapsed with %d events", len(events))
        except httpx.HTTPError as ex:
            raise TransportError(str(ex) or type(ex).__name__) from ex

        body = json.dumps(events)
        return RawResponse(
            status=response.status_code,
            status_text=response.reason_phrase or reason_phrase(response.status_code),
            headers=_raw_headers(response),
            body=body,
            size=len(body.encode("utf-8")),
            time=(time.perf_counter() - start_time) * 1000,
        )

    async def _collect(self, response: httpx.Response, events: List[Dict[str, Any]]):
        parser = SseEventParser()
        async for line in response.aiter_lines():
            event = parser.feed(line.rstrip("\r"))
            if event is not None:
                events.append(event)
                if len(events) >= self.max_events:
                    return


def default_registry(max_events: int = 100, listen_seconds: float = 10.0) -> TransportRegistry:
    # WebSocket and gRPC transports are supplied by the host application
    return TransportRegistry(
        {
            "http": HttpxTransport(),
            "sse": HttpxSseTransport(max_events=max_events, listen_seconds=listen_seconds),
        }
    )
