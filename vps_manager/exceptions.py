"""Custom exceptions for vps-manager."""

from __future__ import annotations

from vps_manager.constants import STAGE_IMAGE


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Invalid environment, plan file or request data."""


class NotRegisteredError(ManagerError):
    """Resolve was called on a logical image name that was never registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Image '{name}' is not registered")
        self.name = name


class DownloadFailedError(ManagerError):
    """Transfer error or non-success response while fetching an image."""


class DriverError(ManagerError):
    """Opaque failure reported by the hypervisor collaborator."""

    def __init__(self, operation: str, target: str, detail: str = "") -> None:
        message = f"{operation} failed for '{target}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.operation = operation
        self.target = target
        self.detail = detail


class StageFailure(ManagerError):
    """A provisioning stage failed; earlier stages are left in place."""

    def __init__(self, stage: str, instance: str, cause: BaseException) -> None:
        super().__init__(f"Provisioning '{instance}' failed at stage '{stage}': {cause}")
        self.stage = stage
        self.instance = instance
        self.cause = cause


class ImageUnavailableError(StageFailure):
    """The requested image could not be resolved (stage 'image')."""

    def __init__(self, instance: str, cause: BaseException) -> None:
        super().__init__(STAGE_IMAGE, instance, cause)


class UnknownActionError(ManagerError):
    """A lifecycle action other than start/stop/reboot/delete was requested."""
