from typing import Any, Dict, List, Optional, Sequence


class CertManagerError(Exception):
    """Base class for every failure raised by vos_cert."""


class TransportError(CertManagerError):
    """Network layer failure (refused, reset, unreachable)."""


class ProtocolError(CertManagerError):
    """The ACME server rejected a request."""

    def __init__(self, message: str, step: str = "", domains: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.step = step
        self.domains = list(domains or [])


class DeadlineExceeded(CertManagerError, TimeoutError):
    def __init__(self, message: str, timeout: float = 0):
        super().__init__(message)
        self.timeout = timeout
        self.details: List[Dict[str, Any]] = []


class ValidationError(CertManagerError):
    """Challenge or order never reached a valid state."""

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class AccountError(CertManagerError):
    """Persisted account material could not be read back."""


class StateError(CertManagerError):
    """An operation was invoked before its prerequisite step."""
