"""Tests for ciflow.concurrency."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import List

from ciflow.concurrency import CancellationToken, ConcurrencyGovernor, Decision


@dataclass
class Holder:
    """Minimal cancellable holder."""

    id: str
    is_terminal: bool = False
    reasons: List[str] = field(default_factory=list)
    run_id: str = ""

    def __post_init__(self) -> None:
        self.run_id = self.run_id or self.id

    def cancel(self, reason: str = "cancelled") -> None:
        self.reasons.append(reason)


class TestCancellationToken:
    """Cooperative cancellation flags."""

    def test_cancel_once(self) -> None:
        """The first reason sticks."""
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_child_observes_parent(self) -> None:
        """Children see the parent's cancellation, not the other way round."""
        parent = CancellationToken()
        child = parent.child()
        child_only = parent.child()
        child_only.cancel("own")
        assert not parent.cancelled

        parent.cancel("run cancelled")
        assert child.cancelled
        assert child.reason == "run cancelled"
        assert child_only.reason == "own"


class TestGovernor:
    """One active holder per group."""

    def test_cancel_in_progress_true(self) -> None:
        """The older active holder is told to cancel; the newer proceeds."""
        gov = ConcurrencyGovernor()
        old, new = Holder("r1"), Holder("r2")
        assert gov.admit("ci-main", old, cancel_in_progress=True).decision is Decision.PROCEED

        admission = gov.admit("ci-main", new, cancel_in_progress=True)
        assert admission.decision is Decision.PROCEED_AFTER_CANCELLING
        assert admission.cancelled == "r1"
        assert len(old.reasons) == 1
        assert "r2" in old.reasons[0]
        assert new.reasons == []
        assert gov.active("ci-main") == "r2"

    def test_cancel_in_progress_false(self) -> None:
        """Without cancel-in-progress both proceed independently."""
        gov = ConcurrencyGovernor()
        old, new = Holder("r1"), Holder("r2")
        gov.admit("g", old, cancel_in_progress=False)
        admission = gov.admit("g", new, cancel_in_progress=False)
        assert admission.decision is Decision.PROCEED
        assert old.reasons == []
        assert gov.active("g") == "r2"

    def test_terminal_holder_not_cancelled(self) -> None:
        """A finished holder is replaced without a cancel signal."""
        gov = ConcurrencyGovernor()
        old = Holder("r1", is_terminal=True)
        gov.admit("g", old, cancel_in_progress=True)
        assert gov.admit("g", Holder("r2"), cancel_in_progress=True).decision is Decision.PROCEED
        assert old.reasons == []

    def test_groups_are_independent(self) -> None:
        """Holders in different groups never affect each other."""
        gov = ConcurrencyGovernor()
        a, b = Holder("a"), Holder("b")
        gov.admit("ci-main", a, cancel_in_progress=True)
        gov.admit("ci-dev", b, cancel_in_progress=True)
        assert a.reasons == [] and b.reasons == []
        assert gov.groups() == {"ci-main": "a", "ci-dev": "b"}

    def test_release_only_current_holder(self) -> None:
        """A superseded holder's release does not drop its successor."""
        gov = ConcurrencyGovernor()
        old, new = Holder("r1"), Holder("r2")
        gov.admit("g", old, cancel_in_progress=True)
        gov.admit("g", new, cancel_in_progress=True)
        assert gov.release("g", old) is False
        assert gov.active("g") == "r2"
        assert gov.release("g", new) is True
        assert gov.active("g") is None

    def test_at_most_one_cancel_per_supersession(self) -> None:
        """Concurrent admissions leave exactly one active holder."""
        gov = ConcurrencyGovernor()
        holders = [Holder(f"r{i}") for i in range(20)]
        threads = [
            threading.Thread(target=gov.admit, args=("g", h), kwargs={"cancel_in_progress": True})
            for h in holders
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        active = gov.active("g")
        survivors = [h for h in holders if not h.reasons]
        assert [h.id for h in survivors] == [active]

    def test_same_run_members_share_group(self) -> None:
        """Instances of one run never cancel each other."""
        gov = ConcurrencyGovernor()
        eu, us = Holder("deploy (eu)", run_id="run-1"), Holder("deploy (us)", run_id="run-1")
        gov.admit("deploy", eu, cancel_in_progress=True)
        assert gov.admit("deploy", us, cancel_in_progress=True).decision is Decision.PROCEED
        assert eu.reasons == [] and us.reasons == []

        assert gov.release("deploy", us) is True
        assert gov.active("deploy") == "deploy (eu)"

    def test_other_run_cancels_every_member(self) -> None:
        """A newer run supersedes all members of the holding run."""
        gov = ConcurrencyGovernor()
        eu, us = Holder("deploy (eu)", run_id="run-1"), Holder("deploy (us)", run_id="run-1")
        gov.admit("deploy", eu, cancel_in_progress=True)
        gov.admit("deploy", us, cancel_in_progress=True)

        admission = gov.admit("deploy", Holder("deploy (eu)#2", run_id="run-2"), cancel_in_progress=True)
        assert admission.decision is Decision.PROCEED_AFTER_CANCELLING
        assert admission.cancelled == "deploy (eu), deploy (us)"
        assert len(eu.reasons) == 1 and len(us.reasons) == 1
        assert gov.release("deploy", eu) is False
        assert gov.active("deploy") == "deploy (eu)#2"
