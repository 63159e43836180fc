import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

sys.path.append(str(Path(__file__).resolve().parents[1]))

from courier.models import HistoryEntry, RawResponse, ScriptExecutionResult


class FakeTransport:
    """Records every request; optionally waits on `gate` or raises `error`."""

    def __init__(self, response: Optional[RawResponse] = None, error: Optional[Exception] = None, gate=False):
        self.response = response or RawResponse(status=200, status_text="OK", body='{"ok": true}')
        self.error = error
        self.gate = asyncio.Event() if gate else None
        self.calls: List = []

    async def send(self, request):
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.response


class FakeSandbox:
    """Returns canned results keyed by script source."""

    def __init__(self, results: Optional[Dict[str, ScriptExecutionResult]] = None):
        self.results = results or {}
        self.contexts = []

    async def run(self, source, context, timeout_ms):
        self.contexts.append(context)
        return self.results.get(source, ScriptExecutionResult())


class MemoryHistory:
    def __init__(self, fail: bool = False):
        self.entries: List[HistoryEntry] = []
        self.fail = fail

    def append_history(self, entry: HistoryEntry):
        if self.fail:
            raise OSError("disk full")
        self.entries.insert(0, entry)
