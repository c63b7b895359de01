"""Custom exceptions for ievms."""

from __future__ import annotations

from typing import Optional, Sequence


class ProvisionError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class TransientNetworkError(ProvisionError):
    """A download attempt failed in transport; retryable."""


class IntegrityError(ProvisionError):
    """A downloaded file does not match its expected checksum; retryable."""


class FetchError(ProvisionError):
    """An artifact could not be fetched within its attempt budget."""


class PreconditionError(ProvisionError):
    """The requested build is structurally invalid; raised before any work."""


class WaitTimeout(ProvisionError, TimeoutError):
    """A configured deadline expired while polling the hypervisor."""


class BuildCancelled(ProvisionError):
    """A supervising process asked the build to stop."""


class HypervisorCommandError(ProvisionError):
    """VBoxManage reported a failure."""

    def __init__(
        self,
        message: str,
        cmd: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd) if cmd else []
        self.returncode = returncode
        self.output = output


class StepError(ProvisionError):
    """A recipe step failed; carries the step position for reproduction."""

    def __init__(self, vm_name: str, index: int, description: str, cause: BaseException) -> None:
        super().__init__(f"{vm_name}: step {index} ({description}) failed: {cause}")
        self.vm_name = vm_name
        self.index = index
        self.description = description
        self.cause = cause
