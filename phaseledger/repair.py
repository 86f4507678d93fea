"""Consistency checks between the ledger and the feature folders.

Removing a feature is two steps (move the folder, then update the ledger)
with no transaction across them. An interruption between the steps leaves
state that only this module detects. Checks never modify anything; fixes
run only for the categories the caller explicitly asks for.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidTransition
from .ledger import LedgerStore
from .models import (
    FEATURE_TYPES,
    INITIAL_PHASE,
    PHASES,
    Feature,
    RepairIssue,
    RepairReport,
    phase_index,
)
from .phaseledger_logging import log_operation
from .validators import resolve_validator
from .workspace import Workspace, read_initialization_heading

logger = logging.getLogger("phaseledger.repair")


def check_consistency(workspace: Workspace, store: LedgerStore) -> RepairReport:
    """Compare ledger ids against ``todo/``, ``done/`` and ``removed/``."""
    ledger = store.load()
    active = set(workspace.list_folder_ids("todo"))
    archived = set(workspace.list_folder_ids("done"))
    removed = set(workspace.list_folder_ids("removed"))

    report = RepairReport()
    for feature in ledger.features:
        if feature.id in removed:
            report.removed_in_ledger.append(feature.id)
            report.issues.append(RepairIssue(
                kind="removed_in_ledger",
                feature_id=feature.id,
                message=f"'{feature.id}' was moved to removed/ but is still in the ledger",
            ))
            continue
        has_folder = feature.id in active or (feature.is_complete and feature.id in archived)
        if not has_folder:
            report.ledger_only.append(feature.id)
            report.issues.append(RepairIssue(
                kind="ledger_only",
                feature_id=feature.id,
                message=f"'{feature.id}' is in the ledger but has no feature folder",
            ))

    tracked = set(ledger.ids())
    for folder_id in sorted(active - tracked):
        report.folder_only.append(folder_id)
        report.issues.append(RepairIssue(
            kind="folder_only",
            feature_id=folder_id,
            message=f"Folder todo/{folder_id} has no ledger entry",
        ))

    if report.healthy:
        logger.debug("Ledger and feature folders are consistent")
    else:
        logger.warning(f"Consistency check found {len(report.issues)} issue(s)")
    return report


def check_feature(workspace: Workspace, store: LedgerStore, feature_id: str) -> List[RepairIssue]:
    """Folder presence plus the artifacts every gate already passed expects.

    Gate errors for phases the feature has reached become warnings: the
    feature got there, possibly by a forced advance, and the evidence is
    now missing or stale.
    """
    feature = store.get(feature_id)
    folder = workspace.locate_feature(feature.id)
    if folder is None:
        return [RepairIssue(
            kind="ledger_only",
            feature_id=feature.id,
            message=f"'{feature.id}' has no feature folder",
        )]

    issues: List[RepairIssue] = []
    for phase in PHASES[1:phase_index(feature.phase) + 1]:
        gate = resolve_validator(feature.type, phase)
        if gate is None:
            continue
        for message in gate(folder).errors:
            issues.append(RepairIssue(
                kind="missing_artifact",
                feature_id=feature.id,
                message=f"{phase}: {message}",
                level="warning",
            ))
    return issues


def _restored_feature(workspace: Workspace, folder_id: str) -> Optional[Feature]:
    heading = read_initialization_heading(workspace.feature_path(folder_id))
    if heading is not None:
        feature_type, title = heading
    else:
        feature_type = folder_id.split("-", 1)[0]
        title = folder_id
    if feature_type not in FEATURE_TYPES:
        return None
    return Feature(id=folder_id, title=title, type=feature_type, phase=INITIAL_PHASE)


def apply_repair(
    workspace: Workspace,
    store: LedgerStore,
    report: RepairReport,
    *,
    finish_removals: bool = False,
    drop_orphans: bool = False,
    restore_folders: bool = False,
) -> Dict[str, List[str]]:
    """Apply the fixes the user asked for and return what was done.

    * ``finish_removals``: drop ledger entries whose folder already sits in
      ``removed/`` (completes an interrupted remove).
    * ``drop_orphans``: drop ledger entries that have no folder at all.
    * ``restore_folders``: re-register ``todo/`` folders missing from the
      ledger, reading type and title from their initialization.md heading.
      Restored features start over in the planning phase.
    """
    actions: Dict[str, List[str]] = {
        "finished_removals": [],
        "dropped": [],
        "restored": [],
        "skipped": [],
    }

    with log_operation(
        "apply_repair",
        finish_removals=finish_removals,
        drop_orphans=drop_orphans,
        restore_folders=restore_folders,
    ):
        if finish_removals:
            for feature_id in report.removed_in_ledger:
                if store.find(feature_id) is None:
                    actions["skipped"].append(feature_id)
                    continue
                store.remove(feature_id)
                actions["finished_removals"].append(feature_id)

        if drop_orphans:
            for feature_id in report.ledger_only:
                if store.find(feature_id) is None or workspace.locate_feature(feature_id) is not None:
                    actions["skipped"].append(feature_id)
                    continue
                store.remove(feature_id)
                actions["dropped"].append(feature_id)

        if restore_folders:
            for folder_id in report.folder_only:
                feature = _restored_feature(workspace, folder_id)
                if feature is None or store.find(folder_id) is not None:
                    logger.warning(f"Cannot restore '{folder_id}': no usable type or already tracked")
                    actions["skipped"].append(folder_id)
                    continue
                store.restore(feature)
                actions["restored"].append(folder_id)

    if any(actions[key] for key in ("finished_removals", "dropped", "restored")):
        store.history.append("repair", **actions)
    return actions


def rewind_feature(store: LedgerStore, feature_id: str, target_phase: str) -> Dict[str, Any]:
    """Move a feature back to an earlier phase.

    The only way a phase goes backwards. No gate runs; the move is recorded
    as a ``phase_transition`` plus a ``repair`` history event.
    """
    if target_phase not in PHASES:
        raise InvalidTransition(feature_id, None, target_phase)
    feature = store.get(feature_id)
    if phase_index(target_phase) >= phase_index(feature.phase):
        raise InvalidTransition(feature.id, feature.phase, target_phase)

    from_phase = feature.phase
    store.update_phase(feature.id, target_phase)
    if feature.blocked_reason:
        store.history.append("feature_unblocked", feature_id=feature.id, phase=target_phase)
    entry = store.history.append(
        "phase_transition",
        feature_id=feature.id,
        repair=True,
        **{"from": from_phase, "to": target_phase},
    )
    store.history.append("repair", ts=entry["ts"], rewound=[feature.id], to=target_phase)
    logger.warning(f"Rewound {feature.id}: {from_phase} -> {target_phase}")
    store.hooks.emit(
        "phase_transition",
        feature_id=feature.id,
        timestamp=entry["ts"],
        from_phase=from_phase,
        to_phase=target_phase,
    )
    return {"feature_id": feature.id, "from_phase": from_phase, "to_phase": target_phase}
