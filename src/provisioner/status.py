"""Status classification for asynchronously provisioned resources.

Every backend in this project reports progress as a raw status string
("creating", "ACTIVE", "ERROR_DELETING", ...). Instead of comparing those
strings ad hoc in each resource, a single classifier maps them onto a
closed set of classes that the poll loop understands.

RULES (in priority order):
1. Any status containing "error" (case-insensitive) is ERROR.
2. A status equal to one of the kind's failure statuses is ERROR.
3. A status equal to one of the target statuses is SUCCESS.
4. Everything else, including an empty status, is TRANSIENT.

Error detection runs before target matching, so a status
that is both erroneous and equal to a target string is still an error.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

ERROR_MARKER = "error"


class StatusClass(str, Enum):
    """Closed classification of a raw status string."""

    TRANSIENT = "transient"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class StatusSnapshot:
    """The part of a backend response needed to judge progress.

    Attributes:
        status: Raw status string as reported by the backend.
        message: Optional backend-provided detail, used for failure diagnosis.
        payload: Full response body, handed back to the caller on convergence.
    """

    status: str | None
    message: str | None = None
    payload: dict | None = None

    def describe(self) -> str:
        """Human readable status for error messages."""
        status = self.status or "<empty>"
        if self.message:
            return f"{status} ({self.message})"
        return status


def _normalize(statuses: Iterable[str]) -> frozenset[str]:
    return frozenset(s.strip().lower() for s in statuses if s and s.strip())


def classify(
    raw: str | None,
    targets: Iterable[str],
    failure_statuses: Iterable[str] = (),
) -> StatusClass:
    """Classify a raw status string.

    Pure and total: never raises, any input yields exactly one class.

    Args:
        raw: Status string reported by the backend (may be None or empty).
        targets: Acceptable target statuses (matched exactly, case-insensitive).
        failure_statuses: Extra terminal failure statuses without an "error"
            marker, e.g. Kubernetes "failed".

    Returns:
        The StatusClass for the status.
    """
    if not raw:
        return StatusClass.TRANSIENT

    status = raw.strip().lower()

    if ERROR_MARKER in status:
        return StatusClass.ERROR
    if status in _normalize(failure_statuses):
        return StatusClass.ERROR
    if status in _normalize(targets):
        return StatusClass.SUCCESS
    return StatusClass.TRANSIENT


class StatusClassifier:
    """Per-kind classifier bound to a set of target statuses.

    Instances are callable on a StatusSnapshot so they can be used directly
    as the predicate of a PollSpec. An empty target set never yields SUCCESS,
    which is what a removal wait wants for kinds without a "deleted" status.
    """

    def __init__(
        self,
        targets: Iterable[str],
        failure_statuses: Iterable[str] = (),
    ) -> None:
        self._targets = _normalize(targets)
        self._failure_statuses = _normalize(failure_statuses)

    @property
    def targets(self) -> frozenset[str]:
        return self._targets

    def describe_target(self) -> str:
        """Target statuses joined for messages, e.g. 'running|provisioned'."""
        return "|".join(sorted(self._targets))

    def classify(self, raw: str | None) -> StatusClass:
        return classify(raw, self._targets, self._failure_statuses)

    def __call__(self, snapshot: StatusSnapshot) -> StatusClass:
        return self.classify(snapshot.status)

    def __repr__(self) -> str:
        return (
            f"StatusClassifier(targets={sorted(self._targets)}, "
            f"failure_statuses={sorted(self._failure_statuses)})"
        )
