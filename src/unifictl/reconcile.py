"""Observe / diff / apply convergence shared by ownership and credential management.

A reconciler owns a desired state. :func:`converge` fetches the actual state
once, asks the reconciler for the minimal set of actions that closes the gap,
and applies them. Running it again after a successful apply yields an empty
plan.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

StateT = TypeVar("StateT")
ActionT = TypeVar("ActionT")


@dataclass(slots=True)
class ReconcilePlan(Generic[ActionT]):
    """Actions required to reach the desired state, plus non-fatal notes."""

    actions: list[ActionT] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when applying the plan would change anything."""
        return bool(self.actions)


class Reconciler(Protocol[StateT, ActionT]):
    """Protocol implemented by concrete reconcilers."""

    def observe(self) -> StateT:
        """Return the actual state."""

    def diff(self, actual: StateT) -> ReconcilePlan[ActionT]:
        """Return the actions that move *actual* to the desired state."""

    def apply(self, plan: ReconcilePlan[ActionT]) -> list[str]:
        """Execute *plan*, returning warnings for best-effort failures."""


def converge(
    reconciler: Reconciler[StateT, ActionT],
    *,
    dry_run: bool = False,
) -> ReconcilePlan[ActionT]:
    """Observe, diff and (unless *dry_run*) apply in one pass."""
    plan = reconciler.diff(reconciler.observe())
    if not dry_run and plan.changed:
        plan.warnings.extend(reconciler.apply(plan))
    return plan


__all__ = ["ReconcilePlan", "Reconciler", "converge"]
