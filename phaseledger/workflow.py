"""Workflow management for phaseledger.

This module wires the ledger, the transition controller, the metrics
collector and the repair checker for one project root and exposes them as
operations that return plain dictionaries, ready to hand back from an MCP
tool. Errors are turned into responses that tell the caller what to do next.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PhaseLedgerError, RemovalIncomplete, ScaffoldFailed, ValidationFailed
from .history import HistoryLog
from .ledger import LedgerStore
from .metrics import (
    MetricsCollector,
    initialize_metrics,
    load_aggregated_metrics,
    load_feature_metrics,
    load_metrics_index,
)
from .models import (
    FEATURE_TYPES,
    PHASE_STEPS,
    PHASES,
    TERMINAL_PHASE,
    ValidationIssue,
    next_phase,
    utc_now,
)
from .phaseledger_logging import EventHooks, log_error_with_context, log_operation, log_performance
from .repair import apply_repair, check_consistency, check_feature, rewind_feature
from .transitions import MAX_REVIEW_RETRIES, REVIEW_PHASE, PhaseTransitionController
from .validators import GATES
from .workspace import Workspace

logger = logging.getLogger("phaseledger.workflow")

TEST_RUN_STATUSES = ("pass", "fail")


def _error_response(
    error: Exception,
    operation: str,
    next_step: str,
    **context: Any,
) -> Dict[str, Any]:
    """Shape an exception into the standard error response."""
    log_error_with_context(error, {"operation": operation, **context})
    if isinstance(error, PhaseLedgerError):
        response = error.to_dict()
        response["suggestion"] = error.suggestions[0] if error.suggestions else None
    else:
        response = {
            "code": "UNEXPECTED_ERROR",
            "error": str(error),
            "details": type(error).__name__,
            "suggestions": [],
            "suggestion": "Check the server log for details",
        }
    response["next_suggested_step"] = next_step
    response["message"] = f"Error: {response['error']}"
    return response


class WorkflowManager:
    """Ledger-backed feature workflow for one project root."""

    def __init__(self, root: Path | str, hooks: Optional[EventHooks] = None):
        """Wire every component for ``root``; nothing is written yet."""
        self.workspace = Workspace(root)
        self.hooks = hooks or EventHooks()
        self.history = HistoryLog(self.workspace)
        self.store = LedgerStore(self.workspace, self.history, self.hooks)
        self.controller = PhaseTransitionController(self.store, self.workspace, self.history, self.hooks)
        self.collector = MetricsCollector(self.workspace, self.store, self.history)
        self.collector.subscribe(self.hooks)

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    @log_performance("init_project")
    def init_project(self, project_name: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        """Create the storage tree, config, empty ledger and zero metrics."""
        if self.workspace.is_initialized() and not force:
            return {
                "initialized": False,
                "root": str(self.workspace.root),
                "next_suggested_step": "list_features",
                "message": f"Project already initialized at {self.workspace.root}",
            }

        try:
            with log_operation("init_project", root=str(self.workspace.root)):
                self.workspace.initialize()
                config = self.workspace.save_config(project_name)
                self.store.initialize(force=True)
                initialize_metrics(self.workspace)
                self.history.append("init", project_name=config["project_name"])
        except Exception as e:
            return _error_response(e, "init_project", "init_project", root=str(self.workspace.root))

        return {
            "initialized": True,
            "root": str(self.workspace.root),
            "config": config,
            "next_suggested_step": "create_feature",
            "workflow_tip": "Next: track your first work item with create_feature",
            "message": f"Initialized phaseledger project '{config['project_name']}'",
        }

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    @log_performance("create_feature")
    def create_feature(
        self,
        title: str,
        feature_type: str = "feature",
        description: Optional[str] = None,
        external_id: Optional[str] = None,
        rollback_on_scaffold_failure: bool = False,
    ) -> Dict[str, Any]:
        """Add a ledger entry, then scaffold its folder.

        When scaffolding fails the ledger entry is kept (and reported) unless
        ``rollback_on_scaffold_failure`` asks for it to be removed again.
        """
        try:
            feature = self.store.add(title, feature_type, external_id)
        except Exception as e:
            return _error_response(e, "create_feature", "create_feature", title=title, type=feature_type)

        try:
            folder = self.workspace.scaffold_feature(feature.id, feature.title, feature.type, description)
        except Exception as e:
            failure = ScaffoldFailed(feature, str(e))
            response = _error_response(failure, "create_feature", "check_repair", feature_id=feature.id)
            response["feature"] = feature.to_dict()
            response["rolled_back"] = False
            if rollback_on_scaffold_failure:
                try:
                    self.store.remove(feature.id)
                    response["rolled_back"] = True
                    response["next_suggested_step"] = "create_feature"
                except Exception as rollback_error:
                    logger.error(f"Rollback of {feature.id} failed: {rollback_error}")
            return response

        first_gate = "investigation.md" if feature.type == "bug" else "initialization.md"
        return {
            "feature": feature.to_dict(),
            "folder": str(folder),
            "next_suggested_step": "advance_feature",
            "workflow_tip": f"Next: fill in planning/{first_gate}, then advance to refinement",
            "message": f"Created {feature.type} '{feature.id}'",
        }

    def list_features(
        self,
        include_complete: bool = True,
        feature_type: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List tracked features, optionally filtered."""
        try:
            features = self.store.list_features(
                include_complete=include_complete,
                feature_type=feature_type,
                phase=phase,
            )
        except Exception as e:
            return _error_response(e, "list_features", "init_project")

        return {
            "features": [feature.to_dict() for feature in features],
            "count": len(features),
            "message": f"Found {len(features)} features" if features else "No features tracked yet. Use create_feature to add one.",
        }

    def show_feature(self, feature_id: str) -> Dict[str, Any]:
        """Ledger record plus folder, metrics, artifact issues and history."""
        try:
            feature = self.store.resolve(feature_id)
            folder = self.workspace.locate_feature(feature.id)
            metrics = load_feature_metrics(self.workspace, feature.id)
            issues = check_feature(self.workspace, self.store, feature.id)
            events = self.history.for_feature(feature.id)
        except Exception as e:
            return _error_response(e, "show_feature", "list_features", feature_id=feature_id)

        upcoming = next_phase(feature.phase)
        return {
            "feature": feature.to_dict(),
            "folder": str(folder) if folder else None,
            "next_phase": upcoming,
            "metrics": metrics.to_dict() if metrics else None,
            "issues": [issue.to_dict() for issue in issues],
            "history": events[-20:],
            "next_suggested_step": "check_gate" if upcoming else "list_features",
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def check_gate(self, feature_id: str, target_phase: Optional[str] = None) -> Dict[str, Any]:
        """Evaluate a gate without advancing."""
        try:
            feature = self.store.resolve(feature_id)
            outcome = self.controller.check(feature.id, target_phase)
        except Exception as e:
            return _error_response(e, "check_gate", "show_feature", feature_id=feature_id)

        feature_id = feature.id
        ready = (outcome.validation is None or outcome.validation.valid) and not outcome.blocked
        response = outcome.to_dict()
        response.update({
            "ready": ready,
            "next_suggested_step": "advance_feature" if ready else "check_gate",
            "message": (
                f"'{feature_id}' can advance to {outcome.to_phase}"
                if ready
                else f"'{feature_id}' is not ready for {outcome.to_phase}"
            ),
        })
        return response

    def advance_feature(
        self,
        feature_id: str,
        target_phase: Optional[str] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """Advance to ``target_phase`` (default: the next phase)."""
        try:
            feature = self.store.resolve(feature_id)
            feature_id = feature.id
            if target_phase is None:
                target_phase = next_phase(feature.phase)
                if target_phase is None:
                    return {
                        "advanced": False,
                        "feature_id": feature_id,
                        "error": f"'{feature_id}' is already complete",
                        "code": "INVALID_TRANSITION",
                        "next_suggested_step": "list_features",
                    }
            with log_operation("advance_feature", feature_id=feature_id, target_phase=target_phase, force=force):
                outcome = self.controller.advance(feature_id, target_phase, force=force)
        except Exception as e:
            return _error_response(e, "advance_feature", "show_feature", feature_id=feature_id)

        response = outcome.to_dict()
        if not outcome.advanced:
            response.update({
                "next_suggested_step": "check_gate",
                "workflow_tip": "Fix the listed errors and try again, or pass force=True to bypass the gate",
                "message": f"Gate for {target_phase} not met: {'; '.join(outcome.validation.errors)}",
            })
            if outcome.blocked:
                response.update({
                    "next_suggested_step": "rewind_feature",
                    "workflow_tip": (
                        f"Blocked after {outcome.retry_count} failed attempts at {REVIEW_PHASE}; "
                        "fix the errors and advance with force=True, or rewind the feature"
                    ),
                })
            elif target_phase == REVIEW_PHASE:
                response["retries_remaining"] = MAX_REVIEW_RETRIES - outcome.retry_count
            return response

        following = next_phase(target_phase)
        response.update({
            "next_suggested_step": "advance_feature" if following else "list_features",
            "workflow_tip": (
                f"Next: prepare the artifacts for {following}" if following else "Feature complete"
            ),
            "message": f"'{feature_id}' moved from {outcome.from_phase} to {target_phase}"
            + (" (gate bypassed)" if outcome.bypassed else ""),
        })
        return response

    def complete_feature(self, feature_id: str, force: bool = False, archive: bool = False) -> Dict[str, Any]:
        """Advance straight to complete, optionally archiving to ``done/``."""
        response = self.advance_feature(feature_id, TERMINAL_PHASE, force=force)
        if not response.get("advanced") or not archive:
            return response
        feature_id = response["feature_id"]
        try:
            response["archived_to"] = str(self.workspace.archive_feature(feature_id))
        except Exception as e:
            log_error_with_context(e, {"operation": "archive_feature", "feature_id": feature_id})
            response["archive_error"] = str(e)
            response["workflow_tip"] = "Feature is complete but its folder was not archived"
        return response

    # ------------------------------------------------------------------
    # Testing
    # ------------------------------------------------------------------

    def log_test_run(
        self,
        feature_id: str,
        status: str,
        notes: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Record a manual test run for a feature in testing.

        The run is appended to testing.md as the next ``### Session N`` block.
        A failing run sends the feature back to implementation without a gate.
        """
        outcome = (status or "").strip().lower()
        try:
            if outcome not in TEST_RUN_STATUSES:
                raise ValidationFailed(
                    f"Invalid test status: {status}",
                    [ValidationIssue(
                        level="error",
                        message=f"Invalid test status: {status}",
                        expected=", ".join(TEST_RUN_STATUSES),
                        actual=status,
                    )],
                )
            feature = self.store.resolve(feature_id)
            if feature.phase != REVIEW_PHASE:
                raise ValidationFailed(
                    f"'{feature.id}' is in {feature.phase}; test runs can only be logged in {REVIEW_PHASE}"
                )
            timestamp = utc_now()
            with log_operation("log_test_run", feature_id=feature.id, status=outcome):
                session = self.workspace.append_testing_session(
                    feature.id, outcome, notes, attachments, timestamp=timestamp
                )
                self.history.append(
                    "test_run",
                    ts=timestamp,
                    feature_id=feature.id,
                    session=session,
                    status=outcome,
                    notes=notes,
                )
                self.hooks.emit("test_run_logged", feature_id=feature.id, session=session, status=outcome)
                rewound = rewind_feature(self.store, feature.id, "implementation") if outcome == "fail" else None
        except Exception as e:
            return _error_response(e, "log_test_run", "show_feature", feature_id=feature_id)

        response: Dict[str, Any] = {
            "feature_id": feature.id,
            "session": session,
            "status": outcome,
            "timestamp": timestamp,
        }
        if rewound is None:
            response.update({
                "phase": REVIEW_PHASE,
                "next_suggested_step": "complete_feature",
                "workflow_tip": "Testing passed; complete the feature when ready",
                "message": f"Logged passing test session {session} for '{feature.id}'",
            })
        else:
            response.update({
                "phase": rewound["to_phase"],
                "returned_to_implementation": True,
                "next_suggested_step": "advance_feature",
                "workflow_tip": "Fix the issues, record a new review, then advance to testing again",
                "message": f"Logged failing test session {session}; '{feature.id}' returned to implementation",
            })
        return response

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_feature(self, feature_id: str) -> Dict[str, Any]:
        """Move the folder to ``removed/``, then drop the ledger entry.

        The two steps are not atomic. If the second fails the response is a
        critical ``REMOVAL_INCOMPLETE`` that points at repair.
        """
        try:
            feature = self.store.resolve(feature_id)
            removed_path = self.workspace.move_to_removed(feature.id)
        except Exception as e:
            return _error_response(e, "remove_feature", "check_repair", feature_id=feature_id)

        try:
            self.store.remove(feature.id)
        except Exception as e:
            failure = RemovalIncomplete(feature.id, removed_path, str(e))
            response = _error_response(failure, "remove_feature", "check_repair", feature_id=feature.id)
            response["critical"] = True
            response["removed_path"] = str(removed_path)
            return response

        return {
            "removed": True,
            "feature_id": feature.id,
            "removed_path": str(removed_path),
            "message": f"Removed '{feature.id}'; its folder is preserved in {removed_path}",
        }

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def check_repair(self, feature_id: Optional[str] = None) -> Dict[str, Any]:
        """Report ledger/folder divergences; never fixes anything."""
        try:
            report = check_consistency(self.workspace, self.store)
            response = report.to_dict()
            if feature_id:
                feature_id = self.store.resolve(feature_id).id
                response["feature_issues"] = [
                    issue.to_dict() for issue in check_feature(self.workspace, self.store, feature_id)
                ]
        except Exception as e:
            return _error_response(e, "check_repair", "init_project")

        suggestions: List[str] = []
        if report.removed_in_ledger:
            suggestions.append("apply_repair(finish_removals=True) completes interrupted removals")
        if report.ledger_only:
            suggestions.append("apply_repair(drop_orphans=True) drops entries without folders")
        if report.folder_only:
            suggestions.append("apply_repair(restore_folders=True) re-registers untracked folders")
        response.update({
            "suggestions": suggestions,
            "next_suggested_step": "list_features" if report.healthy else "apply_repair",
            "message": "Ledger and folders are consistent" if report.healthy else f"Found {len(report.issues)} issue(s)",
        })
        return response

    def apply_repair(
        self,
        finish_removals: bool = False,
        drop_orphans: bool = False,
        restore_folders: bool = False,
    ) -> Dict[str, Any]:
        """Apply the selected fixes to a fresh consistency report."""
        if not (finish_removals or drop_orphans or restore_folders):
            return {
                "error": "No repair selected",
                "suggestion": "Pass finish_removals, drop_orphans or restore_folders",
                "next_suggested_step": "check_repair",
            }
        try:
            report = check_consistency(self.workspace, self.store)
            actions = apply_repair(
                self.workspace,
                self.store,
                report,
                finish_removals=finish_removals,
                drop_orphans=drop_orphans,
                restore_folders=restore_folders,
            )
            remaining = check_consistency(self.workspace, self.store)
        except Exception as e:
            return _error_response(e, "apply_repair", "check_repair")

        return {
            "actions": actions,
            "healthy": remaining.healthy,
            "remaining": remaining.to_dict(),
            "next_suggested_step": "list_features" if remaining.healthy else "check_repair",
            "message": "Repair applied",
        }

    def rewind_feature(self, feature_id: str, target_phase: str) -> Dict[str, Any]:
        """Move a feature back to an earlier phase (no gate runs)."""
        try:
            feature = self.store.resolve(feature_id)
            if not self.workspace.folder_exists(feature.id, "todo") and self.workspace.folder_exists(feature.id, "done"):
                self.workspace.unarchive_feature(feature.id)
            result = rewind_feature(self.store, feature.id, target_phase)
        except Exception as e:
            return _error_response(e, "rewind_feature", "show_feature", feature_id=feature_id)

        result.update({
            "next_suggested_step": "check_gate",
            "message": f"'{feature.id}' rewound to {target_phase}",
        })
        return result

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self, feature_id: Optional[str] = None) -> Dict[str, Any]:
        """Project aggregate and index, or one feature's record."""
        try:
            if feature_id:
                feature_id = self.store.resolve(feature_id).id
                metrics = load_feature_metrics(self.workspace, feature_id)
                if metrics is None:
                    return {
                        "error": f"No metrics recorded for '{feature_id}'",
                        "suggestion": "Run rebuild_metrics to regenerate metrics",
                        "next_suggested_step": "rebuild_metrics",
                    }
                return {"feature_id": feature_id, "metrics": metrics.to_dict()}

            aggregate = load_aggregated_metrics(self.workspace)
            index = load_metrics_index(self.workspace)
        except Exception as e:
            return _error_response(e, "get_metrics", "rebuild_metrics")

        if aggregate is None:
            return {
                "error": "No aggregated metrics found",
                "suggestion": "Run init_project or rebuild_metrics",
                "next_suggested_step": "rebuild_metrics",
            }
        return {
            "aggregated": aggregate.to_dict(),
            "index": index.to_dict() if index else None,
        }

    def rebuild_metrics(self) -> Dict[str, Any]:
        """Regenerate every derived metrics file."""
        try:
            with log_operation("rebuild_metrics"):
                aggregate = self.collector.rebuild()
        except Exception as e:
            return _error_response(e, "rebuild_metrics", "check_repair")
        return {
            "aggregated": aggregate.to_dict(),
            "message": f"Rebuilt metrics for {aggregate.done + aggregate.todo} feature(s)",
        }

    # ------------------------------------------------------------------
    # Guidance
    # ------------------------------------------------------------------

    def get_workflow_guide(self) -> Dict[str, Any]:
        """Lifecycle steps and which gate guards each phase."""
        gates = {
            phase: {
                feature_type: GATES[(feature_type, phase)].__name__ if (feature_type, phase) in GATES else None
                for feature_type in FEATURE_TYPES
            }
            for phase in PHASES[1:]
        }
        return {
            "phases": list(PHASES),
            "feature_types": list(FEATURE_TYPES),
            "steps": [step.to_dict() for step in PHASE_STEPS],
            "gates": gates,
            "max_review_retries": MAX_REVIEW_RETRIES,
            "rules": [
                "Phases only move forward; skipping ahead runs only the target phase's gate",
                "A failed gate changes nothing; fix the artifacts and retry",
                "force=True bypasses a gate and is recorded in history",
                "Moving a feature back is a repair action (rewind_feature)",
                f"{MAX_REVIEW_RETRIES} failed attempts at the gate into {REVIEW_PHASE} block a feature until it is forced or rewound",
                "log_test_run records a manual test session; a failing run returns the feature to implementation",
            ],
            "next_suggested_step": "init_project" if not self.workspace.is_initialized() else "list_features",
        }
