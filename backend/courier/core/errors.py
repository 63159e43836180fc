from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    RESOLUTION_WARNING = "resolution_warning"
    RESOLUTION_ERROR = "resolution_error"
    SCRIPT_ERROR = "script_error"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"
    CODEC_ERROR = "codec_error"
    GENERATION_ERROR = "generation_error"


class CourierError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR


class ScriptError(CourierError):
    """A user script raised or timed out. Never aborts a send."""

    kind = ErrorKind.SCRIPT_ERROR


class TransportError(CourierError):
    """Network failure, timeout or protocol rejection reported by a transport."""

    kind = ErrorKind.TRANSPORT_ERROR


class SendCancelled(CourierError):
    kind = ErrorKind.CANCELLED


class CodecError(CourierError):
    """
    Raised when an interchange document cannot be converted at all.
    `field` names the offending top-level field (e.g. "info.schema").
    """

    kind = ErrorKind.CODEC_ERROR

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class GenerationError(CourierError):
    kind = ErrorKind.GENERATION_ERROR


class UnsupportedLanguageError(GenerationError):
    def __init__(self, language: str):
        super().__init__(f"Unknown language: {language}")
        self.language = language


class NotFoundError(CourierError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class VaultLockedError(CourierError):
    """Raised when secret data access is attempted while the vault is locked."""


class CryptoError(CourierError):
    pass


class OAuth2Error(CourierError):
    """The token endpoint refused the request or the auth settings are incomplete."""


# --- Non-fatal value objects ---

class ResolutionWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    variable: str
    kind: ErrorKind = ErrorKind.RESOLUTION_WARNING

    @property
    def message(self) -> str:
        return f"Variable '{self.variable}' not found"


class CodecWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    message: str
    kind: ErrorKind = ErrorKind.CODEC_ERROR


class SendError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    detail: Optional[str] = None
