"""
peertranspose exception hierarchy.

This module defines the exception hierarchy for peertranspose,
providing specific exception types for each failure category:

- ResourceError: Device memory allocation and device count failures
- TopologyError: Missing devices, missing peer access, invalid device pairs
- PeerLinkError: Peer link state precondition violations
- RuntimeCallError: Any accelerator runtime call that reports failure
- BackendError: Compute backend availability
- ValidationError: Configuration validation errors

All exceptions inherit from PeerTransposeError for easy catching.
"""

from __future__ import annotations


class PeerTransposeError(Exception):
    """Base exception for all peertranspose errors."""

    pass


class ResourceError(PeerTransposeError):
    """Raised when a device resource cannot be obtained."""

    def __init__(
        self, device: int | None, nbytes: int = 0, cause: Exception | None = None
    ) -> None:
        self.device = device
        self.nbytes = nbytes
        self.cause = cause
        if device is None:
            msg = "Failed to query the device count"
        else:
            msg = f"Failed to allocate {nbytes} bytes on device {device}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class TopologyError(PeerTransposeError):
    """Base exception for device topology problems."""

    pass


class InsufficientDevicesError(TopologyError):
    """Raised when fewer than two devices are installed."""

    def __init__(self, device_count: int, required: int = 2) -> None:
        self.device_count = device_count
        self.required = required
        super().__init__(
            f"Found {device_count} device(s), at least {required} are required"
        )


class NoPeerAccessError(TopologyError):
    """Raised when no pair of devices supports peer access."""

    def __init__(self, device_count: int) -> None:
        self.device_count = device_count
        super().__init__(
            f"None of the {device_count} devices can access another device's memory directly"
        )


class InvalidTopologyError(TopologyError):
    """Raised when a peer operation names the same device twice."""

    def __init__(self, current: int, peer: int, operation: str) -> None:
        self.current = current
        self.peer = peer
        self.operation = operation
        super().__init__(
            f"Cannot {operation} peer access from device {current} to itself (peer={peer})"
        )


class PeerLinkError(PeerTransposeError):
    """Base exception for peer link errors."""

    pass


class PeerLinkStateError(PeerLinkError):
    """Raised when a peer link operation is invalid for the link's state."""

    def __init__(self, current: int, peer: int, state: str, operation: str) -> None:
        self.current = current
        self.peer = peer
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} peer link {current}->{peer} from state '{state}'"
        )


class RuntimeCallError(PeerTransposeError):
    """Raised when an accelerator runtime call reports failure."""

    def __init__(self, call: str, code: int | None = None, detail: str = "") -> None:
        self.call = call
        self.code = code
        self.detail = detail
        msg = f"Runtime call '{call}' failed"
        if code is not None:
            msg += f" with code {code}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class BackendError(PeerTransposeError):
    """Base exception for backend-related errors."""

    pass


class BackendNotAvailableError(BackendError):
    """Raised when a requested backend is not available."""

    def __init__(self, backend_name: str, reason: str) -> None:
        self.backend_name = backend_name
        self.reason = reason
        super().__init__(f"Backend '{backend_name}' is not available: {reason}")


class ValidationError(PeerTransposeError):
    """Base exception for validation-related errors."""

    pass


class InvalidConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration: {parameter}={value!r} - {reason}")


class ValidationMismatchError(ValidationError):
    """Raised in strict mode when the round-tripped matrix differs from the input."""

    def __init__(self, error_count: int, total: int, epsilon: float) -> None:
        self.error_count = error_count
        self.total = total
        self.epsilon = epsilon
        super().__init__(
            f"{error_count} of {total} elements differ by more than {epsilon}"
        )
