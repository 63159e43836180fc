import os
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel

from courier.core import codec, codegen
from courier.core.collections import find_request, remove_item
from courier.core.engine import SendOutcome
from courier.core.errors import NotFoundError
from courier.core.variables import VariableScopes, find_variables, resolve, resolve_request
from courier.core.workspace import Workspace, get_workspace, swap_workspace
from courier.models import (
    Collection,
    CollectionMeta,
    Environment,
    HistoryEntry,
    Request,
    RequestKind,
    Tab,
)

router = APIRouter()


# --- Payloads ---
class NewTabPayload(BaseModel):
    kind: RequestKind = "http"


class OpenRequestPayload(BaseModel):
    collection_id: str
    request_id: str


class SendPayload(BaseModel):
    collection_id: Optional[str] = None


class SavePayload(BaseModel):
    collection_id: str
    folder_id: Optional[str] = None


class VariablePayload(BaseModel):
    value: str


class ImportPayload(BaseModel):
    format: Literal["postman", "native"] = "postman"
    document: Any


class CodegenPayload(BaseModel):
    request: Request
    language: str
    include_comments: bool = False
    resolve: bool = False
    collection_id: Optional[str] = None


class ResolvePayload(BaseModel):
    template: str
    collection_id: Optional[str] = None
    tab_id: Optional[str] = None


class PassphrasePayload(BaseModel):
    passphrase: str


def _scopes(ws: Workspace, collection_id: Optional[str], tab_id: Optional[str] = None) -> VariableScopes:
    scopes = ws.scopes_for(collection_id)
    if tab_id:
        scopes = scopes.with_local(ws.tabs.get(tab_id).local_variables)
    return scopes


# --- Tabs ---
@router.get("/tabs", response_model=List[Tab])
async def list_tabs(ws: Workspace = Depends(get_workspace)):
    return ws.tabs.list()


@router.post("/tabs", response_model=Tab)
async def create_tab(payload: NewTabPayload = Body(default=NewTabPayload()), ws: Workspace = Depends(get_workspace)):
    return ws.tabs.create_tab(payload.kind)


@router.post("/tabs/open", response_model=Tab)
async def open_request(payload: OpenRequestPayload, ws: Workspace = Depends(get_workspace)):
    collection = ws.storage.load_collection(payload.collection_id)
    request = find_request(collection, payload.request_id)
    if request is None:
        raise NotFoundError(f"Unknown request: {payload.request_id}")
    return ws.tabs.open_request(request, collection_request_id=request.id)


@router.get("/tabs/{tab_id}", response_model=Tab)
async def get_tab(tab_id: str, ws: Workspace = Depends(get_workspace)):
    return ws.tabs.get(tab_id)


@router.patch("/tabs/{tab_id}/request", response_model=Tab)
async def update_tab_request(tab_id: str, changes: Dict[str, Any] = Body(...), ws: Workspace = Depends(get_workspace)):
    try:
        return ws.tabs.update_request(tab_id, **changes)
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))


@router.delete("/tabs/{tab_id}")
async def close_tab(tab_id: str, ws: Workspace = Depends(get_workspace)):
    ws.tabs.close_tab(tab_id)
    return {"status": "ok"}


@router.post("/tabs/{tab_id}/send", response_model=SendOutcome)
async def send_tab(tab_id: str, payload: Optional[SendPayload] = None, ws: Workspace = Depends(get_workspace)):
    scopes = ws.scopes_for(payload.collection_id if payload else None)
    outcome = await ws.tabs.send(tab_id, scopes)
    if outcome is None:
        raise HTTPException(status_code=409, detail="a send is already in flight for this tab")
    return outcome


@router.post("/tabs/{tab_id}/cancel")
async def cancel_tab(tab_id: str, ws: Workspace = Depends(get_workspace)):
    return {"cancelled": ws.tabs.cancel(tab_id)}


@router.put("/tabs/{tab_id}/variables/{key}", response_model=Tab)
async def set_tab_variable(tab_id: str, key: str, payload: VariablePayload, ws: Workspace = Depends(get_workspace)):
    return ws.tabs.set_local_variable(tab_id, key, payload.value)


@router.delete("/tabs/{tab_id}/variables/{key}", response_model=Tab)
async def unset_tab_variable(tab_id: str, key: str, ws: Workspace = Depends(get_workspace)):
    return ws.tabs.set_local_variable(tab_id, key, None)


@router.post("/tabs/{tab_id}/oauth2/token", response_model=Tab)
async def fetch_tab_token(tab_id: str, payload: Optional[SendPayload] = None, ws: Workspace = Depends(get_workspace)):
    scopes = ws.scopes_for(payload.collection_id if payload else None)
    return await ws.tabs.fetch_oauth2_token(tab_id, scopes)


@router.post("/tabs/{tab_id}/save", response_model=Tab)
async def save_tab(tab_id: str, payload: SavePayload, ws: Workspace = Depends(get_workspace)):
    collection = ws.storage.load_collection(payload.collection_id)
    ws.storage.save_collection(ws.tabs.save_to_collection(tab_id, collection, payload.folder_id))
    return ws.tabs.get(tab_id)


# --- Collections ---
@router.get("/collections", response_model=List[CollectionMeta])
async def list_collections(ws: Workspace = Depends(get_workspace)):
    return ws.storage.list_collections()


@router.post("/collections", response_model=Collection)
async def create_collection(payload: Dict[str, Any] = Body(default={}), ws: Workspace = Depends(get_workspace)):
    collection = Collection(name=payload.get("name") or "New Collection", description=payload.get("description"))
    ws.storage.save_collection(collection)
    return collection


@router.post("/collections/import")
async def import_collection(payload: ImportPayload, ws: Workspace = Depends(get_workspace)):
    document = payload.document
    if isinstance(document, str):
        document = codec.loads_document(document)
    if payload.format == "native":
        result = codec.import_native(document)
    else:
        result = codec.import_postman(document)
    ws.storage.save_collection(result.collection)
    return {
        "collection": result.collection.model_dump(mode="json"),
        "warnings": [w.model_dump(mode="json") for w in result.warnings],
    }


@router.get("/collections/{collection_id}", response_model=Collection)
async def get_collection(collection_id: str, ws: Workspace = Depends(get_workspace)):
    return ws.storage.load_collection(collection_id)


@router.put("/collections/{collection_id}")
async def save_collection(collection_id: str, collection: Collection, ws: Workspace = Depends(get_workspace)):
    if collection.id != collection_id:
        raise HTTPException(status_code=400, detail="collection id does not match the URL")
    ws.storage.save_collection(collection)
    return {"status": "ok"}


@router.delete("/collections/{collection_id}")
async def delete_collection(collection_id: str, ws: Workspace = Depends(get_workspace)):
    ws.storage.delete_collection(collection_id)
    return {"status": "ok"}


@router.delete("/collections/{collection_id}/items/{item_id}", response_model=Collection)
async def delete_collection_item(collection_id: str, item_id: str, ws: Workspace = Depends(get_workspace)):
    collection = remove_item(ws.storage.load_collection(collection_id), item_id)
    ws.storage.save_collection(collection)
    return collection


@router.get("/collections/{collection_id}/export")
async def export_collection(
    collection_id: str,
    format: Literal["postman", "native"] = "postman",
    ws: Workspace = Depends(get_workspace),
) -> Dict[str, Any]:
    collection = ws.storage.load_collection(collection_id)
    if format == "native":
        return codec.export_native(collection)
    return codec.export_postman(collection)


# --- Environments ---
@router.get("/environments", response_model=List[Environment])
async def list_environments(ws: Workspace = Depends(get_workspace)):
    return ws.storage.list_environments()


@router.get("/environments/active", response_model=Optional[Environment])
async def get_active_environment(ws: Workspace = Depends(get_workspace)):
    return ws.storage.get_active_environment()


@router.delete("/environments/active")
async def clear_active_environment(ws: Workspace = Depends(get_workspace)):
    ws.storage.set_active_environment(None)
    return {"status": "ok"}


@router.put("/environments/{env_id}", response_model=Environment)
async def save_environment(env_id: str, env: Environment, ws: Workspace = Depends(get_workspace)):
    env = env.model_copy(update={"id": env_id})
    ws.storage.save_environment(env)
    return ws.storage.load_environment(env_id)


@router.delete("/environments/{env_id}")
async def delete_environment(env_id: str, ws: Workspace = Depends(get_workspace)):
    ws.storage.delete_environment(env_id)
    return {"status": "ok"}


@router.post("/environments/{env_id}/activate")
async def activate_environment(env_id: str, ws: Workspace = Depends(get_workspace)):
    ws.storage.set_active_environment(env_id)
    return {"status": "ok", "active": env_id}


# --- Vault ---
@router.get("/vault")
async def vault_status(ws: Workspace = Depends(get_workspace)):
    return {"locked": ws.storage.is_locked(), "has_vault": ws.storage.has_vault()}


@router.post("/vault/unlock")
async def unlock_vault(payload: PassphrasePayload, ws: Workspace = Depends(get_workspace)):
    ws.storage.unlock(payload.passphrase)
    return {"status": "unlocked"}


@router.post("/vault/lock")
async def lock_vault(ws: Workspace = Depends(get_workspace)):
    ws.storage.lock()
    return {"status": "locked"}


# --- History ---
@router.get("/history", response_model=List[HistoryEntry])
async def get_history(ws: Workspace = Depends(get_workspace)):
    return ws.storage.load_history()


@router.delete("/history")
async def clear_history(ws: Workspace = Depends(get_workspace)):
    ws.storage.clear_history()
    return {"status": "ok"}


# --- Code generation ---
@router.get("/codegen/languages")
async def list_languages():
    return codegen.supported_languages()


@router.post("/codegen")
async def generate_code(payload: CodegenPayload, ws: Workspace = Depends(get_workspace)):
    request = payload.request
    if payload.resolve:
        request, _ = resolve_request(request, ws.scopes_for(payload.collection_id))
    code = codegen.generate(request, payload.language, include_comments=payload.include_comments)
    return {"language": payload.language, "code": code}


# --- Variables ---
@router.post("/variables/resolve")
async def resolve_template(payload: ResolvePayload, ws: Workspace = Depends(get_workspace)):
    scopes = _scopes(ws, payload.collection_id, payload.tab_id)
    resolution = resolve(payload.template, scopes)
    return {
        "text": resolution.text,
        "variables": find_variables(payload.template),
        "warnings": [{"variable": w.variable, "message": w.message} for w in resolution.warnings],
    }


# --- Workspace ---
@router.get("/workspace")
async def get_workspace_path(ws: Workspace = Depends(get_workspace)):
    return {"path": str(ws.storage.base_dir.resolve())}


@router.post("/workspace")
async def set_workspace(payload: Dict[str, Any] = Body(...)):
    path = payload.get("path")
    if not path:
        raise HTTPException(status_code=400, detail="path is required")
    try:
        abs_path = os.path.abspath(os.path.expanduser(path))
        os.makedirs(abs_path, exist_ok=True)
    except OSError as ex:
        raise HTTPException(status_code=400, detail=f"Cannot use workspace path: {ex}")
    swap_workspace(abs_path)
    return {"path": abs_path}
