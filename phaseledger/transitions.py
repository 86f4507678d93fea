"""Phase transition controller.

The only code path that moves a feature's phase forward. Gates judge and the
controller commits: a failed gate never changes the phase and emits no
transition, so an advance attempt can be retried freely.

Failed attempts to enter testing are counted on the ledger record. After
``MAX_REVIEW_RETRIES`` of them the feature is blocked and further advances
are refused until one is forced or the feature is rewound.
"""

from __future__ import annotations

import logging
from typing import Optional

from .errors import FeatureBlocked, InvalidTransition
from .history import HistoryLog
from .ledger import LedgerStore
from .models import (
    PHASES,
    TERMINAL_PHASE,
    Feature,
    TransitionEvent,
    TransitionOutcome,
    ValidationResult,
    next_phase,
    phase_index,
)
from .phaseledger_logging import EventHooks, event_hooks, log_performance
from .validators import resolve_validator
from .workspace import Workspace

logger = logging.getLogger("phaseledger.transitions")

MAX_REVIEW_RETRIES = 5
REVIEW_PHASE = "testing"


class PhaseTransitionController:
    """Runs gates and commits phase changes for one project."""

    def __init__(
        self,
        store: LedgerStore,
        workspace: Workspace,
        history: Optional[HistoryLog] = None,
        hooks: Optional[EventHooks] = None,
    ):
        self.store = store
        self.workspace = workspace
        self.history = history or store.history
        self.hooks = hooks or event_hooks

    def _check_target(self, feature: Feature, target_phase: str) -> None:
        if target_phase not in PHASES:
            raise InvalidTransition(feature.id, None, target_phase)
        if phase_index(target_phase) <= phase_index(feature.phase):
            raise InvalidTransition(feature.id, feature.phase, target_phase)

    def _run_gate(self, feature: Feature, target_phase: str) -> Optional[ValidationResult]:
        gate = resolve_validator(feature.type, target_phase)
        if gate is None:
            logger.debug(f"No gate for {feature.type} -> {target_phase}")
            return None
        return gate(self.workspace.feature_path(feature.id))

    def _record_review_failure(
        self,
        feature: Feature,
        validation: ValidationResult,
        outcome: TransitionOutcome,
    ) -> None:
        retry_count = feature.retry_count + 1
        blocked_reason = None
        self.history.append(
            "review_failed",
            feature_id=feature.id,
            retry_count=retry_count,
            errors=validation.errors,
        )
        if retry_count >= MAX_REVIEW_RETRIES:
            blocked_reason = (
                f"Gate into {REVIEW_PHASE} failed {retry_count} times "
                f"(limit {MAX_REVIEW_RETRIES}); manual intervention required"
            )
            self.history.append(
                "feature_blocked",
                feature_id=feature.id,
                retry_count=retry_count,
                reason=blocked_reason,
            )
            logger.warning(f"{feature.id} blocked after {retry_count} failed attempts")
        self.store.set_retry_state(feature.id, retry_count, blocked_reason)
        outcome.retry_count = retry_count
        outcome.blocked = blocked_reason is not None
        self.hooks.emit("review_failed", feature_id=feature.id, retry_count=retry_count)

    def check(self, feature_id: str, target_phase: Optional[str] = None) -> TransitionOutcome:
        """Dry run: evaluate the gate without changing anything.

        ``target_phase`` defaults to the phase after the current one.
        """
        if target_phase is not None and target_phase not in PHASES:
            raise InvalidTransition(feature_id, None, target_phase)
        feature = self.store.get(feature_id)
        target = target_phase or next_phase(feature.phase)
        if target is None:
            raise InvalidTransition(feature.id, feature.phase, feature.phase)
        self._check_target(feature, target)

        validation = self._run_gate(feature, target)
        return TransitionOutcome(
            feature_id=feature.id,
            from_phase=feature.phase,
            to_phase=target,
            advanced=False,
            validation=validation,
            retry_count=feature.retry_count,
            blocked=feature.blocked_reason is not None,
        )

    @log_performance("advance_phase")
    def advance(self, feature_id: str, target_phase: str, *, force: bool = False) -> TransitionOutcome:
        """Move ``feature_id`` to ``target_phase`` if its gate allows it.

        A failed gate returns an outcome with ``advanced=False``; it is not an
        error. ``force`` commits anyway and records a ``validation_bypass``
        history event. Skipping phases is allowed, but only the gate of the
        target phase runs.
        """
        if target_phase not in PHASES:
            raise InvalidTransition(feature_id, None, target_phase)
        feature = self.store.get(feature_id)
        self._check_target(feature, target_phase)
        from_phase = feature.phase
        if feature.blocked_reason and not force:
            raise FeatureBlocked(feature.id, feature.blocked_reason)

        validation = self._run_gate(feature, target_phase)
        bypassed = False
        if validation is not None:
            self.history.append(
                "validation",
                feature_id=feature.id,
                phase=target_phase,
                result="passed" if validation.valid else "failed",
                errors=validation.errors,
                warnings=validation.warnings,
            )
            if not validation.valid:
                if not force:
                    logger.info(
                        f"Gate blocked {feature.id} -> {target_phase}: {len(validation.errors)} error(s)"
                    )
                    outcome = TransitionOutcome(
                        feature_id=feature.id,
                        from_phase=from_phase,
                        to_phase=target_phase,
                        advanced=False,
                        validation=validation,
                        retry_count=feature.retry_count,
                    )
                    if target_phase == REVIEW_PHASE:
                        self._record_review_failure(feature, validation, outcome)
                    return outcome
                bypassed = True
                self.history.append(
                    "validation_bypass",
                    feature_id=feature.id,
                    phase=target_phase,
                    errors=validation.errors,
                )
                logger.warning(f"Gate bypassed for {feature.id} -> {target_phase}")

        self.store.update_phase(feature.id, target_phase)
        if feature.blocked_reason:
            self.history.append("feature_unblocked", feature_id=feature.id, phase=target_phase)
            logger.info(f"{feature.id} unblocked by a committed move to {target_phase}")
        event = TransitionEvent(feature_id=feature.id, from_phase=from_phase, to_phase=target_phase)
        self.history.append(
            "phase_transition",
            ts=event.timestamp,
            feature_id=feature.id,
            **{"from": from_phase, "to": target_phase},
        )
        logger.info(f"{feature.id}: {from_phase} -> {target_phase}")
        self.hooks.emit(
            "phase_transition",
            feature_id=feature.id,
            timestamp=event.timestamp,
            from_phase=from_phase,
            to_phase=target_phase,
        )

        if target_phase == TERMINAL_PHASE:
            self.history.append("feature_completed", ts=event.timestamp, feature_id=feature.id)
            self.hooks.emit("feature_completed", feature_id=feature.id, timestamp=event.timestamp)

        return TransitionOutcome(
            feature_id=feature.id,
            from_phase=from_phase,
            to_phase=target_phase,
            advanced=True,
            bypassed=bypassed,
            validation=validation,
            event=event,
        )
