"""Custom exceptions for gpu-vm-bootstrap."""

from __future__ import annotations

from typing import Optional

from gpuhost.constants import (
    EXIT_GENERAL_ERROR,
    EXIT_INVALID_ARGS,
    EXIT_MISSING_DEPS,
    EXIT_STATE_INCONSISTENT,
)


class BootstrapError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    exit_code = EXIT_GENERAL_ERROR

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidInputError(BootstrapError):
    """A flag, environment variable or config value is malformed."""

    exit_code = EXIT_INVALID_ARGS


class MissingDependencyError(BootstrapError):
    """A required package, tool or device is absent."""

    exit_code = EXIT_MISSING_DEPS


class PreconditionError(BootstrapError):
    """The host does not meet a requirement (OS, privilege, network, CPU)."""


class ActionError(BootstrapError):
    """The mutation step of an idempotent action failed."""


class StateInconsistentError(BootstrapError):
    """A binding or network step left the host in a state needing operator attention."""

    exit_code = EXIT_STATE_INCONSISTENT
