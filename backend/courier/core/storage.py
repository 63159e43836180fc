import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, List, Optional

from courier.core.config import settings
from courier.core.crypto import (
    decrypt_value,
    encrypt_value,
    is_encrypted,
    new_master_key,
    open_master_key,
    seal_master_key,
)
from courier.core.errors import CryptoError, NotFoundError, VaultLockedError
from courier.models import Collection, CollectionMeta, Environment, HistoryEntry, Scope, Variable

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class StorageEngine:
    """
    Default JSON-file store for a workspace directory:

        collections/<id>.json
        environments/<id>.json
        history.json          newest first, capped at `history_limit`
        state.json            {"active_environment": id | null}
        .courier/vault.key    master key sealed with the user's passphrase

    Secret environment variables are encrypted with the master key; the key
    only lives in memory between `unlock` and `lock`.
    """

    def __init__(self, workspace_dir: Optional[str] = None, history_limit: Optional[int] = None):
        self.base_dir = Path(workspace_dir or settings.workspace)
        self.collections_dir = self.base_dir / "collections"
        self.environments_dir = self.base_dir / "environments"
        self.history_limit = history_limit or settings.history_limit
        self.master_key: Optional[bytes] = None
        self._history_lock = threading.Lock()

    # --- Paths ---
    def _vault_path(self) -> Path:
        return self.base_dir / ".courier" / "vault.key"

    def _history_path(self) -> Path:
        return self.base_dir / "history.json"

    def _state_path(self) -> Path:
        return self.base_dir / "state.json"

    def _item_path(self, directory: Path, item_id: str, label: str) -> Path:
        if not item_id or not _SAFE_ID.match(item_id):
            raise NotFoundError(f"Unknown {label}: {item_id}")
        return directory / f"{item_id}.json"

    def _atomic_write(self, target_path: Path, data: Any):
        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = target_path.with_suffix(".tmp")
        if hasattr(data, "model_dump"):
            payload = json.dumps(data.model_dump(mode="json"), indent=2)
        else:
            payload = json.dumps(data, indent=2)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target_path)

    def _read_json(self, path: Path, default: Any = None) -> Any:
        if not path.exists():
            return default
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # --- Vault ---
    def has_vault(self) -> bool:
        return self._vault_path().exists()

    def is_locked(self) -> bool:
        return self.master_key is None

    def unlock(self, passphrase: str):
        """
        Unlock the existing vault, or create one with a fresh master key the
        first time a passphrase is provided.
        """
        if not passphrase:
            raise CryptoError("passphrase required")
        if self.has_vault():
            data = self._read_json(self._vault_path())
            self.master_key = open_master_key(data["data"], passphrase)
            return
        master = new_master_key()
        self._atomic_write(self._vault_path(), {"v": 1, "data": seal_master_key(master, passphrase)})
        self.master_key = master
        logger.info("Created vault in %s", self.base_dir)

    def lock(self):
        self.master_key = None

    # --- Collections ---
    def list_collections(self) -> List[CollectionMeta]:
        metas: List[CollectionMeta] = []
        if not self.collections_dir.exists():
            return metas
        for path in self.collections_dir.glob("*.json"):
            try:
                data = self._read_json(path)
            except (OSError, ValueError):
                logger.warning("Skipping unreadable collection file %s", path)
                continue
            metas.append(CollectionMeta(id=path.stem, name=data.get("name", path.stem), updated_at=path.stat().st_mtime))
        metas.sort(key=lambda m: (m.name.lower(), m.id))
        return metas

    def load_collection(self, collection_id: str) -> Collection:
        path = self._item_path(self.collections_dir, collection_id, "collection")
        data = self._read_json(path)
        if data is None:
            raise NotFoundError(f"Unknown collection: {collection_id}")
        return Collection.model_validate(data)

    def save_collection(self, collection: Collection):
        self._atomic_write(self._item_path(self.collections_dir, collection.id, "collection"), collection)

    def delete_collection(self, collection_id: str):
        path = self._item_path(self.collections_dir, collection_id, "collection")
        if not path.exists():
            raise NotFoundError(f"Unknown collection: {collection_id}")
        path.unlink()

    # --- Environments ---
    def _seal_variables(self, env: Environment) -> Environment:
        sealed = []
        for var in env.variables:
            if var.secret and not is_encrypted(var.value):
                if self.master_key is None:
                    raise VaultLockedError("unlock the vault to store secret variables")
                var = var.model_copy(update={"value": encrypt_value(var.value, self.master_key)})
            sealed.append(var)
        return env.model_copy(update={"variables": sealed})

    def _open_variables(self, env: Environment) -> Environment:
        opened: List[Variable] = []
        for var in env.variables:
            if var.secret and is_encrypted(var.value):
                if self.master_key is None:
                    # Hidden while locked: the placeholder stays unresolved
                    var = var.model_copy(update={"value": "", "enabled": False})
                else:
                    var = var.model_copy(update={"value": decrypt_value(var.value, self.master_key)})
            opened.append(var)
        return env.model_copy(update={"variables": opened})

    def list_environments(self) -> List[Environment]:
        envs: List[Environment] = []
        if not self.environments_dir.exists():
            return envs
        for path in sorted(self.environments_dir.glob("*.json")):
            try:
                envs.append(self.load_environment(path.stem))
            except (OSError, ValueError, CryptoError) as ex:
                logger.warning("Skipping environment file %s: %s", path, ex)
        envs.sort(key=lambda e: (e.name.lower(), e.id))
        return envs

    def load_environment(self, env_id: str) -> Environment:
        path = self._item_path(self.environments_dir, env_id, "environment")
        data = self._read_json(path)
        if data is None:
            raise NotFoundError(f"Unknown environment: {env_id}")
        return self._open_variables(Environment.model_validate(data))

    def save_environment(self, env: Environment):
        path = self._item_path(self.environments_dir, env.id, "environment")
        self._atomic_write(path, self._seal_variables(env))

    def delete_environment(self, env_id: str):
        path = self._item_path(self.environments_dir, env_id, "environment")
        if not path.exists():
            raise NotFoundError(f"Unknown environment: {env_id}")
        path.unlink()
        if self._read_state().get("active_environment") == env_id:
            self.set_active_environment(None)

    def _read_state(self) -> dict:
        try:
            data = self._read_json(self._state_path(), default={})
        except ValueError:
            logger.warning("Ignoring corrupt %s", self._state_path())
            return {}
        return data if isinstance(data, dict) else {}

    def get_active_environment(self) -> Optional[Environment]:
        env_id = self._read_state().get("active_environment")
        if not env_id:
            return None
        try:
            return self.load_environment(env_id)
        except NotFoundError:
            return None

    def set_active_environment(self, env_id: Optional[str]):
        if env_id is not None:
            self.load_environment(env_id)  # existence check
        state = self._read_state()
        state["active_environment"] = env_id
        self._atomic_write(self._state_path(), state)

    def load_globals(self) -> List[Variable]:
        """Variables of every global-scope environment, in name order."""
        variables: List[Variable] = []
        for env in self.list_environments():
            if env.scope == Scope.GLOBAL:
                variables.extend(env.variables)
        return variables

    # --- History ---
    def load_history(self) -> List[HistoryEntry]:
        try:
            data = self._read_json(self._history_path(), default=[])
        except ValueError:
            logger.warning("History file is corrupt; starting empty")
            return []
        return [HistoryEntry.model_validate(item) for item in data]

    def append_history(self, entry: HistoryEntry):
        with self._history_lock:
            history = self.load_history()
            history.insert(0, entry)
            history = history[: self.history_limit]
            self._atomic_write(self._history_path(), [h.model_dump(mode="json") for h in history])

    def clear_history(self):
        with self._history_lock:
            self._atomic_write(self._history_path(), [])
