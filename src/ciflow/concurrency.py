"""Cross-run mutual exclusion and cooperative cancellation.

The ``ConcurrencyGovernor`` owns the only piece of process-wide mutable
state in the engine: the map from concurrency group key to the holders (a
Run, or the JobInstances of one Run for job-level groups) currently active. All
access goes through its methods, which serialize on a single lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    A cancellation flag observed between units of work.

    Child tokens report cancelled as soon as their parent does, so a Run's
    token reaches every JobInstance without walking them.
    """

    def __init__(self, parent: Optional[CancellationToken] = None):
        self._event = threading.Event()
        self._reason: str | None = None
        self._parent = parent

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class Cancellable(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def run_id(self) -> str: ...

    @property
    def is_terminal(self) -> bool: ...

    def cancel(self, reason: str = ...) -> None: ...


class Decision(str, Enum):
    PROCEED = "proceed"
    PROCEED_AFTER_CANCELLING = "proceed_after_cancelling"


@dataclass(frozen=True)
class Admission:
    decision: Decision
    group: str
    cancelled: str | None = None  # ids of the holders that were told to stop


class ConcurrencyGovernor:
    """
    Maps concurrency group keys to the Run that holds them.

    A group is held by the members of one Run at a time: several instances
    of the same Run may share a key without affecting each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, List[Cancellable]] = {}

    def admit(self, group: str, holder: Cancellable, *, cancel_in_progress: bool) -> Admission:
        """
        Register `holder` as an active member of `group`.

        A holder from the Run already holding the group joins it. Otherwise
        the group changes hands: with `cancel_in_progress` the previous Run's
        non-terminal members are signalled to cancel first; without it both
        proceed independently and the newest one is tracked.
        """
        with self._lock:
            members = self._active.get(group, [])
            if members and members[0].run_id == holder.run_id:
                if all(m.id != holder.id for m in members):
                    members.append(holder)
                logger.debug(
                    "concurrency group '%s': %s joined run %s", group, holder.id, holder.run_id
                )
                return Admission(Decision.PROCEED, group)

            stopped = [m for m in members if not m.is_terminal] if cancel_in_progress else []
            for member in stopped:
                logger.info(
                    "concurrency group '%s': cancelling %s in favour of %s",
                    group, member.id, holder.id,
                )
                member.cancel(f"superseded by {holder.id} in concurrency group '{group}'")
            self._active[group] = [holder]

        if stopped:
            ids = ", ".join(m.id for m in stopped)
            return Admission(Decision.PROCEED_AFTER_CANCELLING, group, cancelled=ids)

        logger.debug("concurrency group '%s': admitted %s", group, holder.id)
        return Admission(Decision.PROCEED, group)

    def release(self, group: str, holder: Cancellable) -> bool:
        """Drop `holder` from `group` if it is still a member."""
        with self._lock:
            members = self._active.get(group, [])
            remaining = [m for m in members if m.id != holder.id]
            if len(remaining) == len(members):
                return False
            if remaining:
                self._active[group] = remaining
            else:
                del self._active[group]
            return True

    def active(self, group: str) -> str | None:
        """Id of the newest member holding `group`."""
        with self._lock:
            members = self._active.get(group)
            return members[-1].id if members else None

    def groups(self) -> Dict[str, str]:
        with self._lock:
            return {g: m[-1].id for g, m in self._active.items()}
