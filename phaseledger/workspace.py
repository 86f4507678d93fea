"""Workspace management for phaseledger.

This module owns the on-disk layout of a project: where the ledger, history
and metrics live under ``.phaseledger/``, and where feature folders live under
``features/{todo,done,removed}``. It also implements the folder-level
collaborators the core relies on (scaffolding, relocation, archiving).
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import FilePermission, FolderMoveError, NotInitialized
from .models import FEATURE_TYPES, LEDGER_VERSION, utc_now

logger = logging.getLogger("phaseledger.workspace")

FOLDER_AREAS = ("todo", "done", "removed")

_TYPE_LABELS = {"feature": "Feature", "bug": "Bug", "task": "Task"}

# Heading of one logged test run in testing.md
SESSION_HEADING_PATTERN = re.compile(r"^###\s+Session\s+\d+", re.MULTILINE | re.IGNORECASE)

TESTING_LOG_HEADER = "# Testing Log\n\nManual test results for this feature.\n"


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class Workspace:
    """Paths and folder operations for one project root."""

    STORAGE_DIR_ENV = "PHASELEDGER_STORAGE_DIR"
    DEFAULT_STORAGE_DIR = ".phaseledger"
    CONTENT_DIR = "features"

    def __init__(self, root: Path | str):
        """Bind the workspace to ``root`` without touching the filesystem."""
        self.root = Path(root).resolve()
        storage_name = os.getenv(self.STORAGE_DIR_ENV) or self.DEFAULT_STORAGE_DIR

        self.base_dir = self.root / storage_name
        self.state_dir = self.base_dir / "state"
        self.metrics_dir = self.base_dir / "metrics"
        self.metrics_features_dir = self.metrics_dir / "features"
        self.content_dir = self.root / self.CONTENT_DIR
        self.todo_dir = self.content_dir / "todo"
        self.done_dir = self.content_dir / "done"
        self.removed_dir = self.content_dir / "removed"

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "ledger.json"

    @property
    def history_path(self) -> Path:
        return self.state_dir / "history.log"

    @property
    def aggregated_metrics_path(self) -> Path:
        return self.metrics_dir / "aggregated.json"

    @property
    def metrics_index_path(self) -> Path:
        return self.metrics_dir / "index.json"

    def feature_metrics_path(self, feature_id: str) -> Path:
        return self.metrics_features_dir / f"{feature_id}.json"

    def feature_path(self, feature_id: str) -> Path:
        """Active folder of a feature (``features/todo/<id>``)."""
        return self.todo_dir / feature_id

    def done_path(self, feature_id: str) -> Path:
        return self.done_dir / feature_id

    def removed_path(self, feature_id: str) -> Path:
        return self.removed_dir / feature_id

    def area_dir(self, area: str) -> Path:
        if area not in FOLDER_AREAS:
            raise ValueError(f"Unknown folder area '{area}'; expected one of {FOLDER_AREAS}")
        return self.content_dir / area

    def initialize(self) -> None:
        """Create the storage and content directory tree."""
        directories = [
            self.base_dir,
            self.state_dir,
            self.metrics_dir,
            self.metrics_features_dir,
            self.todo_dir,
            self.done_dir,
            self.removed_dir,
        ]
        for directory in directories:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except PermissionError as e:
                raise FilePermission(directory, str(e)) from e
        logger.info(f"Workspace initialized at {self.root}")

    def is_initialized(self) -> bool:
        return self.ledger_path.exists()

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    def write_json(self, path: Path, data: Any) -> None:
        """Atomically write ``data`` as pretty JSON."""
        try:
            atomic_write_text(path, json.dumps(data, indent=2) + "\n")
        except PermissionError as e:
            raise FilePermission(path, str(e)) from e

    def read_json(self, path: Path) -> Any:
        """Read JSON from ``path``; parse errors propagate to the caller."""
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except PermissionError as e:
            raise FilePermission(path, str(e)) from e

    # ------------------------------------------------------------------
    # Project config
    # ------------------------------------------------------------------

    def save_config(self, project_name: Optional[str] = None) -> Dict[str, Any]:
        """Write config.json for a freshly initialized project."""
        config = {
            "project_id": str(uuid.uuid4()),
            "project_name": project_name or self.root.name,
            "version": LEDGER_VERSION,
            "created_at": utc_now(),
        }
        self.write_json(self.config_path, config)
        return config

    def load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise NotInitialized(self.root)
        return self.read_json(self.config_path)

    # ------------------------------------------------------------------
    # Feature folders
    # ------------------------------------------------------------------

    def list_folder_ids(self, area: str = "todo") -> List[str]:
        """Names of the feature folders present in ``area``."""
        directory = self.area_dir(area)
        if not directory.exists():
            return []
        return sorted(path.name for path in directory.iterdir() if path.is_dir())

    def folder_exists(self, feature_id: str, area: str = "todo") -> bool:
        return (self.area_dir(area) / feature_id).is_dir()

    def locate_feature(self, feature_id: str) -> Optional[Path]:
        """The feature's active folder, else its archived one, else None."""
        for folder in (self.feature_path(feature_id), self.done_path(feature_id)):
            if folder.is_dir():
                return folder
        return None

    def artifact_count(self, feature_id: str) -> int:
        """Number of files in the feature's folder (active or archived)."""
        folder = self.locate_feature(feature_id)
        if folder is None:
            return 0
        return sum(1 for path in folder.rglob("*") if path.is_file())

    def scaffold_feature(
        self,
        feature_id: str,
        title: str,
        feature_type: str,
        description: Optional[str] = None,
    ) -> Path:
        """Create ``todo/<id>/planning/initialization.md``."""
        feature_dir = self.feature_path(feature_id)
        try:
            (feature_dir / "planning").mkdir(parents=True, exist_ok=True)
            init_path = feature_dir / "planning" / "initialization.md"
            init_path.write_text(
                self._render_initialization(title, feature_type, description),
                encoding="utf-8",
            )
        except PermissionError as e:
            raise FilePermission(feature_dir, str(e)) from e

        logger.info(f"Scaffolded feature folder {feature_dir}")
        return feature_dir

    def append_testing_session(
        self,
        feature_id: str,
        status: str,
        notes: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        timestamp: Optional[str] = None,
    ) -> int:
        """Append a numbered ``### Session N`` block to the feature's testing.md.

        Returns the session number. The file is created with a header when
        it does not exist yet.
        """
        testing_path = self.feature_path(feature_id) / "testing.md"
        existing = testing_path.read_text(encoding="utf-8") if testing_path.exists() else TESTING_LOG_HEADER
        session = len(SESSION_HEADING_PATTERN.findall(existing)) + 1

        lines = [
            f"### Session {session}",
            "",
            f"**Status:** {status.upper()}",
            f"**Timestamp:** {timestamp or utc_now()}",
            f"**Notes:** {notes or 'No notes provided'}",
        ]
        if attachments:
            lines.append("**Attachments:**")
            lines.extend(f"- {attachment}" for attachment in attachments)
        block = "\n".join(lines) + "\n"

        separator = "" if existing.endswith("\n\n") else ("\n" if existing.endswith("\n") else "\n\n")
        try:
            atomic_write_text(testing_path, existing + separator + block)
        except PermissionError as e:
            raise FilePermission(testing_path, str(e)) from e

        logger.info(f"Logged testing session {session} ({status}) for {feature_id}")
        return session

    def move_to_removed(self, feature_id: str) -> Path:
        """Relocate a feature folder to ``removed/``, preserving it.

        Archived features are taken from ``done/`` when there is no active
        folder.
        """
        source = self.locate_feature(feature_id) or self.feature_path(feature_id)
        return self._relocate(source, self.removed_path(feature_id))

    def archive_feature(self, feature_id: str) -> Path:
        """Relocate a completed feature to ``done/`` and ensure a summary.md."""
        target = self._relocate(self.feature_path(feature_id), self.done_path(feature_id))
        summary_path = target / "summary.md"
        if not summary_path.exists():
            summary_path.write_text(self._render_summary(target, feature_id), encoding="utf-8")
        return target

    def unarchive_feature(self, feature_id: str) -> Path:
        """Move an archived feature back from ``done/`` to ``todo/``."""
        return self._relocate(self.done_path(feature_id), self.feature_path(feature_id))

    def _relocate(self, source: Path, target: Path) -> Path:
        if not source.exists():
            raise FolderMoveError(source, target, f"Feature directory not found: {source}")
        if target.exists():
            raise FolderMoveError(source, target, f"Target already exists: {target}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(source, target)
            except OSError:
                # cross-device: copy then delete
                shutil.copytree(source, target)
                shutil.rmtree(source)
        except PermissionError as e:
            raise FilePermission(source, str(e)) from e

        logger.info(f"Moved {source} -> {target}")
        return target

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render_initialization(self, title: str, feature_type: str, description: Optional[str]) -> str:
        label = _TYPE_LABELS.get(feature_type, "Feature")
        if feature_type == "bug":
            criteria = "- [ ] Bug is reproduced\n- [ ] Root cause identified\n- [ ] Fix verified"
        else:
            criteria = "- [ ] [Add acceptance criteria]"
        return (
            f"# {label}: {title}\n\n"
            f"## Description\n{description or '[Add description here]'}\n\n"
            "## Context\n[Any additional context, links, references]\n\n"
            f"## Acceptance Criteria\n{criteria}\n\n"
            "## Notes\n[Additional notes]\n"
        )

    def _render_summary(self, folder: Path, feature_id: str) -> str:
        heading = read_initialization_heading(folder)
        title = heading[1] if heading else feature_id
        return (
            f"# Feature Complete: {title}\n\n"
            "## Summary\nFeature completed and archived.\n\n"
            f"## Feature ID\n{feature_id}\n\n"
            f"## Completed\n{utc_now()}\n"
        )


_INIT_HEADING_PATTERN = re.compile(r"^#\s+(Feature|Bug|Task):\s*(.+)$", re.MULTILINE | re.IGNORECASE)


def read_initialization_heading(feature_dir: Path) -> Optional[tuple[str, str]]:
    """Recover ``(type, title)`` from a scaffolded initialization.md."""
    init_path = feature_dir / "planning" / "initialization.md"
    if not init_path.exists():
        return None
    match = _INIT_HEADING_PATTERN.search(init_path.read_text(encoding="utf-8"))
    if not match:
        return None
    feature_type = match.group(1).lower()
    if feature_type not in FEATURE_TYPES:
        return None
    return feature_type, match.group(2).strip()

