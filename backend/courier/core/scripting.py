import asyncio
import json
import logging
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from courier.core.variables import VariableScopes
from courier.models import RawResponse, Request, ScriptExecutionResult, TestResult

logger = logging.getLogger(__name__)

CHILD_SCRIPT = Path(__file__).with_name("sandbox_child.py")
LOG_LEVELS = ("[ERROR]", "[WARN]", "[INFO]", "[DEBUG]")
_STREAM_LIMIT = 2 ** 20


class ScriptPhase(str, Enum):
    PRE_REQUEST = "pre_request"
    TEST = "test"


class ScriptContext(BaseModel):
    """Everything a script may see. Nothing else crosses the sandbox boundary."""

    phase: ScriptPhase
    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    variables: Dict[str, str] = {}

    @classmethod
    def build(
        cls,
        phase: ScriptPhase,
        request: Request,
        scopes: VariableScopes,
        response: Optional[RawResponse] = None,
    ) -> "ScriptContext":
        return cls(
            phase=phase,
            request=request.model_dump(mode="json", exclude={"extras"}),
            response=response.model_dump(mode="json") if response is not None else None,
            variables=scopes.merged(),
        )


class ScriptSandbox(Protocol):
    async def run(self, source: str, context: ScriptContext, timeout_ms: int) -> ScriptExecutionResult:
        ...


def log_level(line: str) -> Optional[str]:
    """Return the tag of a console line, or None for untagged lines."""
    for tag in LOG_LEVELS:
        if line.startswith(tag):
            return tag.strip("[]")
    return None


class ScriptEventCollector:
    """Builds a ScriptExecutionResult from the runner's event stream."""

    def __init__(self):
        self.console_logs: List[str] = []
        self.test_results: List[TestResult] = []
        self.variable_updates: Dict[str, Optional[str]] = {}
        self.error: Optional[str] = None
        self.finished = False

    def feed(self, raw: bytes):
        try:
            event = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed script event: %r", raw[:200])
            return
        if not isinstance(event, dict):
            return
        kind = event.get("event")
        if kind == "log":
            self.console_logs.append(str(event.get("line", "")))
        elif kind == "test":
            self.test_results.append(
                TestResult(name=str(event.get("name", "")), passed=bool(event.get("passed")), error=event.get("error"))
            )
        elif kind == "set":
            self.variable_updates[str(event.get("key"))] = str(event.get("value", ""))
        elif kind == "unset":
            self.variable_updates[str(event.get("key"))] = None
        elif kind == "error":
            self.error = str(event.get("message") or "Script error")
            self.finished = True
        elif kind == "done":
            self.finished = True

    def build(self, duration_ms: float, error: Optional[str] = None) -> ScriptExecutionResult:
        return ScriptExecutionResult(
            console_logs=list(self.console_logs),
            error=error or self.error,
            duration=duration_ms,
            test_results=list(self.test_results),
            variable_updates=dict(self.variable_updates),
        )


class SubprocessSandbox:
    """
    Runs each script in a fresh `python -I` process. The script only gets the
    JSON context written to its stdin; results come back as JSON lines.
    """

    def __init__(self, python_executable: Optional[str] = None):
        self.python_executable = python_executable or sys.executable

    async def run(self, source: str, context: ScriptContext, timeout_ms: int) -> ScriptExecutionResult:
        if not source or not source.strip():
            return ScriptExecutionResult()

        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        collector = ScriptEventCollector()
        message = json.dumps(
            {
                "source": source,
                "filename": f"<{context.phase.value}-script>",
                "context": context.model_dump(mode="json"),
            }
        ).encode("utf-8")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-I",
                str(CHILD_SCRIPT),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as ex:
            logger.error("Could not start script runner %s: %s", self.python_executable, ex)
            return collector.build(_elapsed(start), error=f"Script runner unavailable: {ex}")

        error: Optional[str] = None
        deadline = loop.time() + timeout_ms / 1000
        try:
            try:
                proc.stdin.write(message)
                await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Script runner closed stdin early")

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                line = await asyncio.wait_for(proc.stdout.readline(), remaining)
                if not line:
                    break
                collector.feed(line)
        except asyncio.TimeoutError:
            error = f"Script timed out after {timeout_ms} ms"
            logger.info("Killing script runner after %s ms", timeout_ms)
        except (ValueError, asyncio.LimitOverrunError) as ex:
            # readline() gives up on a line longer than the stream limit
            error = f"Script output exceeded {_STREAM_LIMIT} bytes in one event"
            logger.warning("Killing script runner: %s", ex)
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            stderr = await proc.stderr.read()
            await proc.wait()

        if error is None and not collector.finished:
            detail = stderr.decode("utf-8", errors="replace").strip().splitlines()
            error = detail[-1] if detail else f"Script runner exited with code {proc.returncode}"
        return collector.build(_elapsed(start), error=error)


def _elapsed(start: float) -> float:
    return (time.perf_counter() - start) * 1000
