"""Error taxonomy for transaction admission and signing.

Every failure inside the submission path is one of these kinds. The submitter
turns them into a retry decision or an ``errored`` record; only
``ConfigurationError`` is raised to callers of ``enqueue``.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification used by the submitter retry policy."""

    CONFIGURATION = "configuration"
    CREDENTIAL = "credential"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    NONCE_CONFLICT = "nonce_conflict"
    BROADCAST_REJECTED = "broadcast_rejected"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    SIMULATION = "simulation"


class EngineError(Exception):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION
    retryable: bool = False

    def __init__(self, message: str = "", cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def describe(self) -> str:
        """Human-readable cause stored on errored records."""
        if self.cause is not None and str(self.cause) not in self.message:
            return f"{self.kind.value}: {self.message} ({self.cause})"
        return f"{self.kind.value}: {self.message}"


class ConfigurationError(EngineError):
    """Missing or invalid backend configuration. Never retried."""

    kind = ErrorKind.CONFIGURATION


class CredentialError(EngineError):
    """Authentication against a remote KMS failed."""

    kind = ErrorKind.CREDENTIAL
    retryable = True


class BackendUnavailableError(EngineError):
    """Transient failure of a remote service (KMS or chain RPC)."""

    kind = ErrorKind.BACKEND_UNAVAILABLE
    retryable = True


class NonceConflictError(EngineError):
    """Chain rejected the transaction because its nonce is stale or taken."""

    kind = ErrorKind.NONCE_CONFLICT


class BroadcastRejectedError(EngineError):
    """Permanent chain-level rejection, e.g. insufficient funds."""

    kind = ErrorKind.BROADCAST_REJECTED


class ConfirmationTimeoutError(EngineError):
    """A submitted transaction was never observed mined."""

    kind = ErrorKind.CONFIRMATION_TIMEOUT


class SimulationError(EngineError):
    """Pre-flight ``eth_call`` reverted."""

    kind = ErrorKind.SIMULATION


class InvalidTransitionError(ValueError):
    """A record status change that the state machine does not allow."""

    pass


class RecordNotFoundError(LookupError):
    """No queued transaction has the requested queue id."""

    pass
