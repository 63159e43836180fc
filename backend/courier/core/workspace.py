import logging
from typing import Optional

from courier.core.engine import RequestRunner
from courier.core.storage import StorageEngine
from courier.core.tabs import TabManager
from courier.core.variables import VariableScopes
from courier.models import Scope

logger = logging.getLogger(__name__)


class Workspace:
    """Storage, runner and open tabs for one workspace directory."""

    def __init__(self, workspace_dir: Optional[str] = None, runner: Optional[RequestRunner] = None):
        self.storage = StorageEngine(workspace_dir)
        self.runner = runner or RequestRunner(history=self.storage)
        self.tabs = TabManager(self.runner)

    def scopes_for(self, collection_id: Optional[str] = None) -> VariableScopes:
        """Snapshot of the active environment, collection and global variables."""
        collection_variables = []
        if collection_id:
            collection_variables = self.storage.load_collection(collection_id).variables
        environment = self.storage.get_active_environment()
        if environment is not None and environment.scope == Scope.GLOBAL:
            # Global environments live in the global layer only, even when active
            environment = None
        return VariableScopes.snapshot(
            environment=environment,
            collection_variables=collection_variables,
            globals_=self.storage.load_globals(),
        )


workspace = Workspace()


def get_workspace() -> Workspace:
    return workspace


def swap_workspace(workspace_dir: str) -> Workspace:
    """
    Replace the global workspace with one pointing to a new directory.
    Open tabs belong to the old workspace and are dropped.
    """
    global workspace
    logger.info("Switching workspace to %s", workspace_dir)
    workspace = Workspace(workspace_dir)
    return workspace
