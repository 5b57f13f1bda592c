"""Poll-until-converged primitives.

A create/update/delete call against the cloud returns immediately while
the resource keeps moving through intermediate states. The functions here
block the calling operation until the resource converges, fails, or the
wait times out:

- wait_until_converged: observe until the predicate reports SUCCESS
- wait_until_removed: observe until the resource can no longer be fetched

LOOP SHAPE:
1. deadline = now + timeout
2. sleep one interval (always before the first observation, so a freshly
   submitted mutation is not hammered)
3. call the accessor, bounded by a share of the remaining budget
4. classify the snapshot: SUCCESS converges, ERROR fails immediately,
   TRANSIENT loops again while the deadline has not passed

Accessor errors are never retried here; any exception the accessor raises
ends the wait as Failed carrying that error. Retrying transient network
errors is the accessor's (HTTP transport's) job. A wait never issues two
accessor calls at the same time and performs no work after returning.

CANCELLATION: setting the optional `cancel` event interrupts a sleep or an
in-flight accessor call and yields Failed(cancelled=True). Cancelling the
task itself propagates asyncio.CancelledError unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import is_not_found
from .status import StatusClass, StatusSnapshot

logger = logging.getLogger(__name__)

Accessor = Callable[[], Awaitable[StatusSnapshot]]
Predicate = Callable[[StatusSnapshot], StatusClass]

CANCELLED_REASON = "cancelled"
DEFAULT_CALL_BUDGET_FRACTION = 0.5


@dataclass(frozen=True)
class PollSpec:
    """Timing and target condition for a single wait.

    Built fresh for every wait and never mutated.

    Attributes:
        interval: Fixed delay in seconds between observations.
        timeout: Absolute budget in seconds for the whole wait.
        predicate: Maps a snapshot to TRANSIENT, SUCCESS or ERROR.
        call_budget_fraction: Share of the remaining budget a single
            accessor call may consume before it is abandoned.
    """

    interval: float
    timeout: float
    predicate: Predicate
    call_budget_fraction: float = DEFAULT_CALL_BUDGET_FRACTION

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError(f"interval must be positive: {self.interval}")
        if self.timeout <= self.interval:
            raise ValueError(
                f"timeout ({self.timeout}s) must be greater than interval ({self.interval}s)"
            )
        if not 0 < self.call_budget_fraction <= 1:
            raise ValueError(
                f"call_budget_fraction must be in (0, 1]: {self.call_budget_fraction}"
            )


@dataclass(frozen=True)
class Converged:
    """The most recent observation satisfied the target predicate."""

    snapshot: StatusSnapshot

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    """The backend reported an error status, an accessor call failed, or the
    wait was cancelled."""

    reason: str
    snapshot: StatusSnapshot | None = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class TimedOut:
    """The deadline elapsed while the status stayed transient."""

    last_snapshot: StatusSnapshot | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class NotFound:
    """The resource can no longer be fetched (success for removal waits)."""

    @property
    def ok(self) -> bool:
        return True


ReconcileOutcome = Converged | Failed | TimedOut | NotFound


class _WaitCancelled(Exception):
    """Internal signal: the cancel event fired during an accessor call."""

    pass


async def _sleep(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for `delay` seconds. Returns True if `cancel` fired first."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except TimeoutError:
        return False
    return True


async def _observe(
    accessor: Accessor,
    budget: float,
    cancel: asyncio.Event | None,
) -> StatusSnapshot:
    """Run one accessor call bounded by `budget` seconds and the cancel event.

    Raises:
        TimeoutError: The call overran its budget.
        _WaitCancelled: The cancel event fired before the call returned.
    """
    call = asyncio.wait_for(accessor(), timeout=budget)
    if cancel is None:
        return await call

    call_task = asyncio.ensure_future(call)
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (call_task, cancel_task):
            if not task.done():
                task.cancel()

    # Prefer a finished call over a simultaneous cancel so its result
    # (or exception) is always retrieved.
    if call_task in done:
        return call_task.result()
    raise _WaitCancelled()


async def _poll(
    accessor: Accessor,
    spec: PollSpec,
    *,
    removal: bool,
    cancel: asyncio.Event | None,
    label: str,
) -> ReconcileOutcome:
    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + spec.timeout
    last: StatusSnapshot | None = None
    attempt = 0

    while True:
        if await _sleep(spec.interval, cancel):
            return Failed(CANCELLED_REASON, snapshot=last, cancelled=True)

        remaining = deadline - loop.time()
        if remaining <= 0:
            return TimedOut(last_snapshot=last)

        attempt += 1
        budget = remaining * spec.call_budget_fraction
        try:
            snapshot = await _observe(accessor, budget, cancel)
        except _WaitCancelled:
            return Failed(CANCELLED_REASON, snapshot=last, cancelled=True)
        except TimeoutError:
            return TimedOut(
                last_snapshot=last,
                detail=f"status request did not return within {budget:.1f}s",
            )
        except Exception as e:
            if removal and is_not_found(e):
                return NotFound()
            reason = "not found" if is_not_found(e) else str(e) or type(e).__name__
            return Failed(reason, snapshot=last, error=e)

        last = snapshot
        verdict = spec.predicate(snapshot)

        logger.debug(
            "Observed status",
            extra={
                "resource": label,
                "status": snapshot.status,
                "verdict": verdict.value,
                "attempt": attempt,
                "elapsed_seconds": round(loop.time() - started, 3),
            },
        )

        if verdict is StatusClass.SUCCESS:
            return Converged(snapshot)
        if verdict is StatusClass.ERROR:
            return Failed(snapshot.describe(), snapshot=snapshot)
        if loop.time() >= deadline:
            return TimedOut(last_snapshot=last)


async def _run(
    accessor: Accessor,
    spec: PollSpec,
    *,
    removal: bool,
    cancel: asyncio.Event | None,
    label: str,
) -> ReconcileOutcome:
    try:
        outcome = await _poll(accessor, spec, removal=removal, cancel=cancel, label=label)
    except asyncio.CancelledError:
        logger.info("Wait interrupted by task cancellation", extra={"resource": label})
        raise

    if outcome.ok:
        logger.info(
            "Wait finished",
            extra={"resource": label, "outcome": type(outcome).__name__},
        )
    else:
        logger.warning(
            "Wait did not converge",
            extra={"resource": label, "outcome": type(outcome).__name__},
        )
    return outcome


async def wait_until_converged(
    accessor: Accessor,
    spec: PollSpec,
    *,
    cancel: asyncio.Event | None = None,
    label: str = "resource",
) -> ReconcileOutcome:
    """Observe a resource until it reaches a target status.

    Args:
        accessor: Coroutine function returning the current StatusSnapshot.
        spec: Timing and target predicate for this wait.
        cancel: Optional event; setting it aborts the wait.
        label: Resource description used in log records.

    Returns:
        Converged, Failed or TimedOut. Never NotFound: a resource that
        disappears while waiting for it to become active is a failure.
    """
    return await _run(accessor, spec, removal=False, cancel=cancel, label=label)


async def wait_until_removed(
    accessor: Accessor,
    spec: PollSpec,
    *,
    cancel: asyncio.Event | None = None,
    label: str = "resource",
) -> ReconcileOutcome:
    """Observe a resource until it no longer exists.

    A not-found accessor error is the success terminus. A status matched by
    the predicate (e.g. "deleted") also counts as removed and is returned as
    Converged. Error statuses fail immediately.

    Args:
        accessor: Coroutine function returning the current StatusSnapshot.
        spec: Timing and predicate for removed/error statuses.
        cancel: Optional event; setting it aborts the wait.
        label: Resource description used in log records.

    Returns:
        NotFound, Converged, Failed or TimedOut.
    """
    return await _run(accessor, spec, removal=True, cancel=cancel, label=label)
