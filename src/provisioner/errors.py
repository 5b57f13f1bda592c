"""Error taxonomy for resource operations.

Every error raised by a resource controller names the resource kind, the
identifier when one is known, and the last observed status, so operators
can act on it without querying the backend again.

TAXONOMY:
- ResourceValidationError: precondition failed before any mutating call
- BackendError: error status reported by the backend, or a failed mutating call
- ReconcileTimeoutError: wait deadline elapsed while status stayed transient
- ReconcileCancelledError: caller cancelled the wait
- ResourceGoneError: resource no longer exists (outside of a delete)

A resource reaching "not found" while waiting for removal is not an error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError

if TYPE_CHECKING:
    from .models import ResourceRef


class ProvisionerError(Exception):
    """Base class for errors surfaced by resource controllers.

    Attributes:
        kind: Resource kind the operation targeted.
        ref: Identifier of the resource, when the backend assigned one.
        last_status: Last status observed before failing, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        ref: ResourceRef | None = None,
        last_status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or (ref.kind.value if ref is not None else None)
        self.ref = ref
        self.last_status = last_status

    @property
    def resource_id(self) -> str | None:
        return self.ref.id if self.ref is not None else None

    def to_log_fields(self) -> dict[str, str | None]:
        """Structured fields for `logger.error(..., extra=...)`."""
        return {
            "error_type": type(self).__name__,
            "kind": self.kind,
            "resource_id": self.resource_id,
            "last_status": self.last_status,
        }


class ResourceValidationError(ProvisionerError):
    """Raised when a precondition fails before any mutating call is issued."""

    pass


class BackendError(ProvisionerError):
    """Raised when the backend reports an error status or a call fails.

    Attributes:
        status_code: HTTP status code of the failed call, when available.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        ref: ResourceRef | None = None,
        last_status: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, kind=kind, ref=ref, last_status=last_status)
        self.status_code = status_code

    @classmethod
    def from_azure_error(
        cls,
        error: AzureError,
        action: str,
        *,
        kind: str | None = None,
        ref: ResourceRef | None = None,
    ) -> BackendError:
        """Wrap an azure-core error raised by a mutating or accessor call."""
        status_code = error.status_code if isinstance(error, HttpResponseError) else None
        subject = kind or "resource"
        if ref is not None:
            subject = f"{ref.kind.value} {ref.id}"
        if status_code is not None:
            message = f"{action} {subject} failed with HTTP {status_code}: {error.message}"
        else:
            message = f"{action} {subject} failed: {error.message}"
        return cls(message, kind=kind, ref=ref, status_code=status_code)


class ReconcileTimeoutError(ProvisionerError):
    """Raised when a resource does not reach its target before the deadline.

    Attributes:
        target: Target status (or "removed") that was not reached.
    """

    def __init__(
        self,
        ref: ResourceRef,
        target: str,
        *,
        last_status: str | None = None,
        detail: str | None = None,
    ) -> None:
        message = f"timed out waiting for {ref.kind.value} {ref.id} to reach {target}"
        if last_status:
            message += f" (last status: {last_status})"
        if detail:
            message += f": {detail}"
        super().__init__(message, ref=ref, last_status=last_status)
        self.target = target


class ReconcileCancelledError(ProvisionerError):
    """Raised when the caller cancels a wait in progress."""

    def __init__(self, ref: ResourceRef, target: str, *, last_status: str | None = None) -> None:
        super().__init__(
            f"cancelled while waiting for {ref.kind.value} {ref.id} to reach {target}",
            ref=ref,
            last_status=last_status,
        )
        self.target = target


class ResourceGoneError(ProvisionerError):
    """Raised when a resource no longer exists outside of a delete."""

    pass


def is_not_found(error: BaseException) -> bool:
    """Check whether an accessor error means the resource no longer exists."""
    if isinstance(error, (ResourceNotFoundError, ResourceGoneError)):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code == 404
    return False
