import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import jmespath
from jmespath.exceptions import JMESPathError
from pydantic import BaseModel

from courier.core.config import settings
from courier.core.errors import ErrorKind, ResolutionWarning, SendCancelled, SendError, TransportError
from courier.core.scripting import ScriptContext, ScriptPhase, ScriptSandbox, SubprocessSandbox
from courier.core.transports import TransportRegistry, default_registry, reason_phrase
from courier.core.variables import VariableScopes, resolve_request
from courier.models import (
    ExtractionRule,
    HistoryEntry,
    HttpRequest,
    RawResponse,
    Request,
    Response,
    ScriptExecutionResult,
)

logger = logging.getLogger(__name__)


class SendState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    PRE_SCRIPT = "pre_script"
    TRANSPORT = "transport"
    TEST_SCRIPT = "test_script"
    COMPLETE = "complete"
    ERRORED = "errored"


class SendOutcome(BaseModel):
    state: SendState
    response: Optional[Response] = None
    error: Optional[SendError] = None
    warnings: List[ResolutionWarning] = []
    states: List[SendState] = []
    pre_request_script_result: Optional[ScriptExecutionResult] = None


class HistoryRecorder(Protocol):
    def append_history(self, entry: HistoryEntry) -> None:
        ...


class _Trace:
    def __init__(self, request_id: str, on_state: Optional[Callable[[SendState], None]]):
        self.request_id = request_id
        self.on_state = on_state
        self.states: List[SendState] = [SendState.IDLE]

    def enter(self, state: SendState):
        logger.debug("send %s: %s -> %s", self.request_id, self.states[-1].value, state.value)
        self.states.append(state)
        if self.on_state is not None:
            self.on_state(state)


class RequestRunner:
    """
    Drives one send: resolve -> pre-request script -> transport -> test
    script -> response. Only resolution and transport failures end a send
    early; script failures are reported on the script result.
    """

    def __init__(
        self,
        transports: Optional[TransportRegistry] = None,
        sandbox: Optional[ScriptSandbox] = None,
        history: Optional[HistoryRecorder] = None,
        script_timeout_ms: Optional[int] = None,
    ):
        self.transports = transports or default_registry(settings.sse_max_events, settings.sse_listen_seconds)
        self.sandbox = sandbox or SubprocessSandbox(settings.python_executable)
        self.history = history
        self.script_timeout_ms = script_timeout_ms or settings.script_timeout_ms
        self._path_prefixes = ("body.", "response.", "$.")
        self._history_tasks: Set[asyncio.Task] = set()

    def _normalize_path(self, path: str) -> str:
        """
        Allow user-friendly prefixes like body.id / response.id / $.id.
        JMESPath expects paths relative to the document root, so we strip
        common prefixes rather than failing silently.
        """
        for prefix in self._path_prefixes:
            if path.startswith(prefix):
                return path[len(prefix):]
        return path

    def _extract(self, rules: List[ExtractionRule], raw: RawResponse) -> Tuple[Dict[str, Any], List[str]]:
        captured: Dict[str, Any] = {}
        errors: List[str] = []
        if not rules:
            return captured, errors
        try:
            document = json.loads(raw.body) if raw.body else None
        except ValueError as ex:
            return captured, [f"Response body is not JSON: {ex}"]

        for rule in rules:
            source_path = self._normalize_path(rule.source_path.strip())
            try:
                value = jmespath.search(source_path, document)
            except JMESPathError as ex:
                errors.append(f"{rule.target_variable}: {ex}")
                continue
            if value is None:
                errors.append(f"{rule.target_variable}: no match for '{source_path}'")
            else:
                captured[rule.target_variable] = value
        return captured, errors

    async def _run_script(
        self,
        source: Optional[str],
        phase: ScriptPhase,
        request: Request,
        scopes: VariableScopes,
        raw: Optional[RawResponse] = None,
    ) -> ScriptExecutionResult:
        context = ScriptContext.build(phase, request, scopes, raw)
        try:
            result = await self.sandbox.run(source or "", context, self.script_timeout_ms)
        except Exception as ex:
            logger.error("%s script runner failed for %s", phase.value, request.id, exc_info=True)
            return ScriptExecutionResult(error=f"Script runner failed: {str(ex) or type(ex).__name__}")
        if result.error:
            logger.info("%s script for %s failed: %s", phase.value, request.id, result.error)
        return result

    async def _call_transport(self, transport, request: Request, cancel_event: Optional[asyncio.Event]) -> RawResponse:
        send_task = asyncio.ensure_future(transport.send(request))
        if cancel_event is None:
            return await send_task
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({send_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not send_task.done() and not cancel_event.is_set():
                # We are being cancelled from outside; do not leak the call
                send_task.cancel()
        if send_task in done:
            return send_task.result()
        send_task.cancel()
        try:
            await send_task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Transport failed after cancellation", exc_info=True)
        raise SendCancelled("Request cancelled")

    def _record_history(self, entry: HistoryEntry):
        if self.history is None:
            return

        def _append():
            self.history.append_history(entry)

        task = asyncio.ensure_future(asyncio.to_thread(_append))
        self._history_tasks.add(task)
        task.add_done_callback(self._history_done)

    def _history_done(self, task: asyncio.Task):
        self._history_tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.error("Failed to record history: %s", ex, exc_info=ex)

    async def flush_history(self):
        """Wait for pending history writes (used on shutdown and in tests)."""
        if self._history_tasks:
            await asyncio.gather(*list(self._history_tasks), return_exceptions=True)

    async def execute(
        self,
        request: Request,
        scopes: VariableScopes,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        on_state: Optional[Callable[[SendState], None]] = None,
    ) -> SendOutcome:
        trace = _Trace(request.id, on_state)

        def _errored(kind: ErrorKind, message: str, **extra) -> SendOutcome:
            trace.enter(SendState.ERRORED)
            return SendOutcome(
                state=SendState.ERRORED,
                error=SendError(kind=kind, message=message),
                states=trace.states,
                **extra,
            )

        # 1. Resolve against the snapshot taken by the caller
        trace.enter(SendState.RESOLVING)
        try:
            resolved, warnings = resolve_request(request, scopes)
        except (TypeError, ValueError) as ex:
            logger.warning("Could not resolve request %s: %s", request.id, ex)
            return _errored(ErrorKind.RESOLUTION_ERROR, str(ex))

        # 2. Pre-request script; its writes land in the local scope of this send
        pre_result: Optional[ScriptExecutionResult] = None
        if request.pre_request_script and request.pre_request_script.strip():
            trace.enter(SendState.PRE_SCRIPT)
            pre_result = await self._run_script(request.pre_request_script, ScriptPhase.PRE_REQUEST, resolved, scopes)
            if pre_result.variable_updates:
                scopes = scopes.with_local(pre_result.variable_updates)
                resolved, warnings = resolve_request(request, scopes)

        # 3. Transport: exactly one call, the only cancellation point
        trace.enter(SendState.TRANSPORT)
        transport = self.transports.get(resolved.type)
        if transport is None:
            return _errored(
                ErrorKind.TRANSPORT_ERROR,
                f"No transport registered for {resolved.type} requests",
                warnings=warnings,
                pre_request_script_result=pre_result,
            )
        try:
            raw = await self._call_transport(transport, resolved, cancel_event)
        except SendCancelled as ex:
            logger.info("Send %s cancelled", request.id)
            return _errored(ErrorKind.CANCELLED, str(ex), warnings=warnings, pre_request_script_result=pre_result)
        except TransportError as ex:
            logger.warning("Transport error for %s: %s", request.id, ex)
            return _errored(ErrorKind.TRANSPORT_ERROR, str(ex), warnings=warnings, pre_request_script_result=pre_result)
        except Exception as ex:
            logger.warning("Transport failed for %s", request.id, exc_info=True)
            return _errored(
                ErrorKind.TRANSPORT_ERROR,
                str(ex) or type(ex).__name__,
                warnings=warnings,
                pre_request_script_result=pre_result,
            )

        # 4. Test script
        test_result: Optional[ScriptExecutionResult] = None
        if request.test_script and request.test_script.strip():
            trace.enter(SendState.TEST_SCRIPT)
            test_result = await self._run_script(request.test_script, ScriptPhase.TEST, resolved, scopes, raw)

        # 5. Assemble the response exactly once
        captured, capture_errors = {}, []
        if isinstance(request, HttpRequest):
            captured, capture_errors = self._extract(request.extract_rules, raw)
        response = Response(
            request_id=request.id,
            status=raw.status,
            status_text=raw.status_text or reason_phrase(raw.status),
            headers=raw.headers,
            body=raw.body,
            size=raw.size,
            time=raw.time,
            pre_request_script_result=pre_result,
            test_script_result=test_result,
            captured_variables=captured,
            capture_errors=capture_errors,
        )
        trace.enter(SendState.COMPLETE)
        self._record_history(HistoryEntry(request=request, response=response))
        return SendOutcome(
            state=SendState.COMPLETE,
            response=response,
            warnings=warnings,
            states=trace.states,
            pre_request_script_result=pre_result,
        )
