"""Unit tests for transitions.py - Transition tables."""

from enum import Enum

import pytest

from managers.base import ApplyResult, DeleteResult, VerifyResult
from manifest import LifecycleState
from permissions import Permission
from transitions import (
    APPLY_TRANSITIONS,
    RECREATE_TRANSITIONS,
    TERMINATE_TRANSITIONS,
    VERIFY_TRANSITIONS,
    Requeue,
    TransitionTableError,
    ensure_total,
)


class TestTables:
    """The shipped tables."""

    def test_apply_results_reverify(self):
        assert APPLY_TRANSITIONS[ApplyResult.SUCCEEDED] == LifecycleState.VERIFYING
        assert (
            APPLY_TRANSITIONS[ApplyResult.AWAITING_VERIFICATION]
            == LifecycleState.VERIFYING
        )
        assert APPLY_TRANSITIONS[ApplyResult.ERROR] == LifecycleState.FAILED

    def test_verify_permission_requirements(self):
        assert VERIFY_TRANSITIONS[VerifyResult.UPDATE_REQUIRED].requires == {
            Permission.UPDATE
        }
        assert VERIFY_TRANSITIONS[VerifyResult.RECREATE_REQUIRED].requires == {
            Permission.CREATE,
            Permission.DELETE,
        }
        assert VERIFY_TRANSITIONS[VerifyResult.READY].requires == frozenset()

    def test_in_progress_backs_off(self):
        transition = VERIFY_TRANSITIONS[VerifyResult.IN_PROGRESS]
        assert transition.target == LifecycleState.VERIFYING
        assert transition.requeue == Requeue.BACKOFF

    def test_terminate_only_finalizes_on_success(self):
        finalizing = [r for r, t in TERMINATE_TRANSITIONS.items() if t.finalize]
        assert finalizing == [DeleteResult.SUCCEEDED]

    def test_recreate_success_creates(self):
        transition = RECREATE_TRANSITIONS[DeleteResult.SUCCEEDED]
        assert transition.target == LifecycleState.CREATING
        assert transition.requeue == Requeue.IMMEDIATE


class TestEnsureTotal:
    """Tests for ensure_total."""

    def test_total_table_passes(self):
        ensure_total(APPLY_TRANSITIONS, ApplyResult, "APPLY_TRANSITIONS")

    def test_missing_member_raises(self):
        class Color(Enum):
            RED = 1
            GREEN = 2
            BLUE = 3

        with pytest.raises(TransitionTableError, match="GREEN, BLUE"):
            ensure_total({Color.RED: "x"}, Color, "COLORS")
