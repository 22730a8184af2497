from __future__ import annotations
"""Per-job policy for destination files that already exist during a download."""
from enum import Enum

from .models import ConflictDecision


class ConflictMode(Enum):
    NORMAL = "normal"
    OVERWRITE_ALL = "overwrite_all"
    SKIP_ALL = "skip_all"


class ConflictAction(Enum):
    OVERWRITE = "overwrite"
    SKIP = "skip"
    CANCEL = "cancel"


_DECISION_ACTIONS = {
    ConflictDecision.OVERWRITE: ConflictAction.OVERWRITE,
    ConflictDecision.OVERWRITE_ALL: ConflictAction.OVERWRITE,
    ConflictDecision.SKIP: ConflictAction.SKIP,
    ConflictDecision.SKIP_ALL: ConflictAction.SKIP,
    ConflictDecision.CANCEL: ConflictAction.CANCEL,
}


class ConflictPolicy:
    """Asks per file until an "all" decision is made, then answers on its own.

    The escalation is one-way: once in ``OVERWRITE_ALL`` or ``SKIP_ALL`` the
    policy stays there for the rest of the job.
    """

    def __init__(self, mode: ConflictMode = ConflictMode.NORMAL):
        self._mode = mode

    @property
    def mode(self) -> ConflictMode:
        return self._mode

    @property
    def needs_decision(self) -> bool:
        return self._mode is ConflictMode.NORMAL

    def automatic_action(self) -> ConflictAction:
        if self._mode is ConflictMode.OVERWRITE_ALL:
            return ConflictAction.OVERWRITE
        if self._mode is ConflictMode.SKIP_ALL:
            return ConflictAction.SKIP
        raise RuntimeError("a decision is required while the policy is in normal mode")

    def apply(self, decision: ConflictDecision) -> ConflictAction:
        if not self.needs_decision:
            return self.automatic_action()
        if decision is ConflictDecision.OVERWRITE_ALL:
            self._mode = ConflictMode.OVERWRITE_ALL
        elif decision is ConflictDecision.SKIP_ALL:
            self._mode = ConflictMode.SKIP_ALL
        return _DECISION_ACTIONS[decision]
