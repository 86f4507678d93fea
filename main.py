"""MCP server exposing the phaseledger feature workflow as tools."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from phaseledger.phaseledger_logging import setup_logging
from phaseledger.workflow import WorkflowManager
from phaseledger.workspace import Workspace

mcp = FastMCP("phaseledger")

PROJECT_ROOT_ENV = "PHASELEDGER_PROJECT_ROOT"
LOG_LEVEL_ENV = "PHASELEDGER_LOG_LEVEL"
LOG_FILE_ENV = "PHASELEDGER_LOG_FILE"


def configure_logging() -> None:
    """Apply the log level and optional JSON log file from the environment."""
    log_file = os.getenv(LOG_FILE_ENV)
    setup_logging(
        os.getenv(LOG_LEVEL_ENV, "INFO").upper(),
        Path(log_file).expanduser() if log_file else None,
    )


def _marker_name() -> str:
    return os.getenv(Workspace.STORAGE_DIR_ENV) or Workspace.DEFAULT_STORAGE_DIR


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    return [cwd, *cwd.parents]


def _locate_workspace_root() -> Optional[Path]:
    marker = _marker_name()
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _manager(root: Optional[str]) -> WorkflowManager:
    return WorkflowManager(_resolve_root(root))


@mcp.tool()
def init_project(
    root: Optional[str] = None,
    project_name: Optional[str] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """STEP 1: Initialize phaseledger in a project.
    Creates the ledger, history and zero metrics under .phaseledger/ and the
    features/{todo,done,removed} folders. Without a root, the current
    directory is used when no existing project is detected."""

    try:
        resolved = _resolve_root(root)
    except ValueError:
        if root:
            raise
        resolved = Path.cwd().resolve()
    return WorkflowManager(resolved).init_project(project_name=project_name, force=force)


@mcp.tool()
def create_feature(
    title: str,
    feature_type: str = "feature",
    description: Optional[str] = None,
    external_id: Optional[str] = None,
    rollback_on_scaffold_failure: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 2: Track a new work item (feature, bug or task) in the planning phase.
    Adds it to the ledger and scaffolds features/todo/<id>/planning/initialization.md."""

    return _manager(root).create_feature(
        title,
        feature_type=feature_type,
        description=description,
        external_id=external_id,
        rollback_on_scaffold_failure=rollback_on_scaffold_failure,
    )


@mcp.tool()
def list_features(
    include_complete: bool = True,
    feature_type: Optional[str] = None,
    phase: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Enumerate tracked features, optionally filtered by type or phase."""

    return _manager(root).list_features(
        include_complete=include_complete,
        feature_type=feature_type,
        phase=phase,
    )


@mcp.resource("phaseledger://features")
def resource_features() -> str:
    """Resource view listing tracked features and their phases."""

    try:
        manager = _manager(None)
    except ValueError:
        return f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."

    result = manager.list_features()
    if "error" in result:
        return result["message"]
    if not result["features"]:
        return "No features are tracked yet."

    lines = ["phaseledger features"]
    for feature in result["features"]:
        lines.append("")
        lines.append(f"- {feature['id']}: {feature['title']}")
        lines.append(f"  Type: {feature['type']}  Phase: {feature['phase']}")
        if feature.get("external_id"):
            lines.append(f"  External: {feature['external_id']}")
    return "\n".join(lines)


@mcp.tool()
def show_feature(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Show one feature: ledger record, folder, metrics, missing artifacts and recent history.
    Accepts a unique fragment of the id."""

    return _manager(root).show_feature(feature_id)


@mcp.tool()
def check_gate(
    feature_id: str,
    target_phase: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Dry run of the gate into target_phase (default: the next phase). Changes nothing."""

    return _manager(root).check_gate(feature_id, target_phase)


@mcp.tool()
def advance_feature(
    feature_id: str,
    target_phase: Optional[str] = None,
    force: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Advance a feature to target_phase (default: the next phase).
    The target phase's gate must pass; a failed gate returns its issues and
    changes nothing. force=True bypasses the gate and records the bypass."""

    return _manager(root).advance_feature(feature_id, target_phase, force=force)


@mcp.tool()
def complete_feature(
    feature_id: str,
    force: bool = False,
    archive: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 4: Move a feature to complete once testing.md records a passing status.
    archive=True then moves its folder to features/done/."""

    return _manager(root).complete_feature(feature_id, force=force, archive=archive)


@mcp.tool()
def log_test_run(
    feature_id: str,
    status: str,
    notes: Optional[str] = None,
    attachments: Optional[List[str]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a manual test run (status: pass or fail) for a feature in testing.
    The run is appended to testing.md as the next session. A failing run moves
    the feature back to implementation."""

    return _manager(root).log_test_run(feature_id, status, notes=notes, attachments=attachments)


@mcp.tool()
def remove_feature(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Withdraw a feature: its folder moves to features/removed/ and its ledger entry is dropped.
    If the ledger update fails after the move, the response is critical; run check_repair."""

    return _manager(root).remove_feature(feature_id)


@mcp.tool()
def check_repair(feature_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Compare the ledger with the feature folders and report divergences without fixing them."""

    return _manager(root).check_repair(feature_id)


@mcp.tool()
def apply_repair(
    finish_removals: bool = False,
    drop_orphans: bool = False,
    restore_folders: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply only the selected repairs: finish interrupted removals, drop ledger
    entries without folders, or re-register untracked folders."""

    return _manager(root).apply_repair(
        finish_removals=finish_removals,
        drop_orphans=drop_orphans,
        restore_folders=restore_folders,
    )


@mcp.tool()
def rewind_feature(feature_id: str, target_phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a feature back to an earlier phase. No gate runs; the rewind is recorded in history."""

    return _manager(root).rewind_feature(feature_id, target_phase)


@mcp.tool()
def get_metrics(feature_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Aggregated project metrics and index, or one feature's metrics."""

    return _manager(root).get_metrics(feature_id)


@mcp.tool()
def rebuild_metrics(root: Optional[str] = None) -> Dict[str, Any]:
    """Regenerate all metrics from the ledger, history and feature folders."""

    return _manager(root).rebuild_metrics()


@mcp.tool()
def get_workflow_guide(root: Optional[str] = None) -> Dict[str, Any]:
    """Describe the lifecycle, the gate guarding each phase and the workflow rules."""

    try:
        resolved = _resolve_root(root)
    except ValueError:
        resolved = Path.cwd().resolve()
    return WorkflowManager(resolved).get_workflow_guide()


if __name__ == "__main__":
    configure_logging()
    logging.getLogger("phaseledger").debug("Starting phaseledger MCP server")
    mcp.run(transport="stdio")
