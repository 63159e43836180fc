import os
import sys
from typing import Mapping, Optional

from pydantic import BaseModel, Field

# Settings field -> environment variable
_ENV_VARS = {
    "workspace": "COURIER_WORKSPACE",
    "script_timeout_ms": "COURIER_SCRIPT_TIMEOUT_MS",
    "history_limit": "COURIER_HISTORY_LIMIT",
    "sse_max_events": "COURIER_SSE_MAX_EVENTS",
    "sse_listen_seconds": "COURIER_SSE_LISTEN_SECONDS",
    "python_executable": "COURIER_PYTHON",
}


class Settings(BaseModel):
    workspace: str = "./workspace"
    script_timeout_ms: int = Field(default=5000, gt=0)
    history_limit: int = Field(default=100, gt=0)
    sse_max_events: int = Field(default=100, gt=0)
    sse_listen_seconds: float = Field(default=10.0, gt=0)
    python_executable: str = Field(default_factory=lambda: sys.executable)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {field: env[var] for field, var in _ENV_VARS.items() if env.get(var)}
        return cls(**values)


settings = Settings.from_env()
