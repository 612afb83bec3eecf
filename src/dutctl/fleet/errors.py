"""Error types for DUT fleet operations.

Every failure the fleet layer reports is a ``DutError`` so the CLI can
print one line naming the target, field or action that failed.
"""

from typing import Optional, Sequence


class DutError(Exception):
    """Base class for fleet errors."""

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        """Initialize the error.

        Args:
            message: Human readable description
            target: Address or identifier of the DUT involved, if any
        """
        super().__init__(message)
        self.message = message
        self.target = target

    def __str__(self) -> str:
        if self.target:
            return f"{self.target}: {self.message}"
        return self.message


class ConnectivityError(DutError):
    """The host could not be reached (network failure or timeout)."""


class AuthenticationError(DutError):
    """The host rejected the configured credentials."""


class ResolutionError(DutError):
    """The host answered but an attribute query failed or was unparseable."""


class RemoteCommandError(DutError):
    """A remote command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, target)
        self.exit_code = exit_code


class TransferError(DutError):
    """Copying files to or from a DUT failed."""


class ConfigurationError(DutError):
    """Malformed target string, bad config value or missing option."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        target: Optional[str] = None,
    ) -> None:
        super().__init__(message, target)
        self.field = field


class UnknownIdentifier(DutError):
    """An identifier is neither an address nor a registered DUT."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Unknown DUT identifier: {identifier}")
        self.identifier = identifier


class RegistryError(DutError):
    """The registry store is missing, unreadable or corrupt."""


class InvalidAction(DutError):
    """One or more requested action names are not in the dispatch table."""

    def __init__(self, names: Sequence[str]) -> None:
        self.names = list(names)
        if self.names:
            message = (
                f"Unknown action(s): {', '.join(self.names)}. "
                "See `dutctl do --list-actions` for available actions."
            )
        else:
            message = "No actions specified. See `dutctl do --list-actions`."
        super().__init__(message)


class ActionFailed(DutError):
    """A dispatched action failed; later actions were not run."""

    def __init__(self, action: str, cause: Exception, target: Optional[str] = None) -> None:
        detail = cause.message if isinstance(cause, DutError) else str(cause)
        super().__init__(f"DUT action {action} failed: {detail}", target)
        self.action = action
        self.cause = cause
