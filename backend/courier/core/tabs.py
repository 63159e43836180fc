import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from courier.core.collections import upsert_request
from courier.core.engine import RequestRunner, SendOutcome, SendState
from courier.core.errors import NotFoundError, OAuth2Error
from courier.core.oauth2 import apply_token, fetch_token
from courier.core.variables import VariableScopes, resolve_request
from courier.models import Collection, HttpRequest, Request, Tab, duplicate_request, new_request, replace_request

logger = logging.getLogger(__name__)


@dataclass
class _SendSession:
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    alive: bool = True


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


class TabManager:
    """
    Owns the open tabs. A tab runs at most one send at a time; different
    tabs send concurrently and never share request state.
    """

    def __init__(self, runner: Optional[RequestRunner] = None):
        self.runner = runner or RequestRunner()
        self.tabs: Dict[str, Tab] = {}
        self._sessions: Dict[str, _SendSession] = {}

    def get(self, tab_id: str) -> Tab:
        try:
            return self.tabs[tab_id]
        except KeyError:
            raise NotFoundError(f"Unknown tab: {tab_id}") from None

    def list(self) -> List[Tab]:
        return list(self.tabs.values())

    def create_tab(self, kind: str = "http") -> Tab:
        request = new_request(kind)
        tab = Tab(title=request.name, request=request)
        self.tabs[tab.id] = tab
        return tab

    def open_request(self, request: Request, collection_request_id: Optional[str] = None) -> Tab:
        """Open a saved request in a new tab. The tab edits its own copy."""
        copy = duplicate_request(request)
        tab = Tab(
            title=copy.name,
            request=copy,
            collection_request_id=collection_request_id or request.id,
        )
        self.tabs[tab.id] = tab
        return tab

    def update_request(self, tab_id: str, **changes: Any) -> Tab:
        tab = self.get(tab_id)
        changes.pop("id", None)
        tab.request = replace_request(tab.request, **changes)
        tab.title = tab.request.name
        tab.is_dirty = True
        return tab

    def set_local_variable(self, tab_id: str, key: str, value: Optional[str]) -> Tab:
        tab = self.get(tab_id)
        if value is None:
            tab.local_variables.pop(key, None)
        else:
            tab.local_variables[key] = value
        return tab

    def close_tab(self, tab_id: str):
        tab = self.tabs.pop(tab_id, None)
        if tab is None:
            raise NotFoundError(f"Unknown tab: {tab_id}")
        session = self._sessions.get(tab_id)
        if session is not None:
            session.alive = False
            session.cancel_event.set()

    def cancel(self, tab_id: str) -> bool:
        self.get(tab_id)
        session = self._sessions.get(tab_id)
        if session is None:
            return False
        session.cancel_event.set()
        return True

    def mark_saved(self, tab_id: str, collection_request_id: str) -> Tab:
        tab = self.get(tab_id)
        tab.collection_request_id = collection_request_id
        tab.is_dirty = False
        return tab

    def save_to_collection(self, tab_id: str, collection: Collection, folder_id: Optional[str] = None) -> Collection:
        """
        Write the tab's request into `collection` under its saved id (or a
        new one on first save) and return the updated collection.
        """
        tab = self.get(tab_id)
        saved_id = tab.collection_request_id or tab.request.id
        updated = upsert_request(collection, tab.request.model_copy(update={"id": saved_id}), folder_id)
        self.mark_saved(tab_id, saved_id)
        return updated

    async def send(self, tab_id: str, scopes: Optional[VariableScopes] = None) -> Optional[SendOutcome]:
        """
        Run the tab's current request. Returns None when the tab already has
        a send in flight. The outcome is written back to the tab only if the
        tab is still open when the send finishes.
        """
        tab = self.get(tab_id)
        if tab.is_loading:
            logger.debug("Tab %s already sending; ignoring", tab_id)
            return None

        session = _SendSession()
        self._sessions[tab_id] = session
        tab.is_loading = True
        request = tab.request
        scopes = (scopes or VariableScopes()).with_local(tab.local_variables)
        try:
            outcome = await self.runner.execute(request, scopes, cancel_event=session.cancel_event)
        finally:
            if self._sessions.get(tab_id) is session:
                del self._sessions[tab_id]
            tab.is_loading = False

        if not session.alive:
            logger.debug("Tab %s closed during send; dropping outcome", tab_id)
            return outcome
        if outcome.state == SendState.COMPLETE:
            tab.response = outcome.response
            tab.last_error = None
            for key, value in outcome.response.captured_variables.items():
                tab.local_variables[key] = _as_text(value)
        else:
            tab.last_error = outcome.error
        return outcome

    async def fetch_oauth2_token(self, tab_id: str, scopes: Optional[VariableScopes] = None, transport=None) -> Tab:
        """Fetch a token for the tab's oauth2 settings and store it on the tab's request."""
        tab = self.get(tab_id)
        request = tab.request
        if not isinstance(request, HttpRequest) or request.auth.type != "oauth2":
            raise OAuth2Error("The request does not use OAuth 2.0 auth")
        scopes = (scopes or VariableScopes()).with_local(tab.local_variables)
        resolved, _ = resolve_request(request, scopes)
        token = await fetch_token(resolved.auth, transport=transport, timeout_seconds=request.timeout_seconds)
        # Settings stay templated; only the token fields change
        return self.update_request(tab_id, auth=apply_token(request.auth, token))
