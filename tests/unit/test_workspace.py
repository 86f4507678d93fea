"""Unit tests for phaseledger workspace management.

This module tests the on-disk layout, atomic JSON writes, project config
and the feature folder operations (scaffold, remove, archive).
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from phaseledger.errors import FilePermission, FolderMoveError, NotInitialized
from phaseledger.metrics import parse_testing_sessions
from phaseledger.workspace import Workspace, atomic_write_text, read_initialization_heading


@pytest.fixture
def workspace(tmp_path):
    workspace = Workspace(tmp_path)
    workspace.initialize()
    return workspace


class TestWorkspaceLayout:
    """Test cases for workspace paths."""

    def test_workspace_creation(self, tmp_path):
        """Binding a root does not touch the filesystem."""
        workspace = Workspace(tmp_path)

        assert workspace.root == tmp_path.resolve()
        assert workspace.base_dir == tmp_path / ".phaseledger"
        assert workspace.ledger_path == tmp_path / ".phaseledger" / "state" / "ledger.json"
        assert workspace.feature_path("bug-001") == tmp_path / "features" / "todo" / "bug-001"
        assert not workspace.base_dir.exists()

    def test_workspace_with_custom_storage_dir(self, tmp_path, monkeypatch):
        """Test workspace with a custom storage directory."""
        monkeypatch.setenv("PHASELEDGER_STORAGE_DIR", ".custom-ledger")
        workspace = Workspace(tmp_path)

        assert workspace.base_dir == tmp_path / ".custom-ledger"
        assert workspace.metrics_index_path == tmp_path / ".custom-ledger" / "metrics" / "index.json"

    def test_initialize_creates_tree(self, workspace):
        for directory in (workspace.state_dir, workspace.metrics_features_dir, workspace.todo_dir,
                          workspace.done_dir, workspace.removed_dir):
            assert directory.is_dir()
        assert not workspace.is_initialized()

    def test_area_dir_rejects_unknown_area(self, workspace):
        with pytest.raises(ValueError, match="Unknown folder area"):
            workspace.area_dir("archive")


class TestAtomicWrites:
    """Test cases for atomic JSON persistence."""

    def test_write_and_read_json(self, workspace):
        workspace.write_json(workspace.ledger_path, {"features": []})

        assert workspace.read_json(workspace.ledger_path) == {"features": []}
        assert workspace.ledger_path.read_text().endswith("\n")

    def test_failed_write_keeps_previous_file(self, tmp_path):
        """An interrupted write leaves the old content and no temp file."""
        target = tmp_path / "ledger.json"
        target.write_text('{"version": "1.0.0"}')

        with patch("phaseledger.workspace.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                atomic_write_text(target, '{"version": "2.0.0"}')

        assert json.loads(target.read_text()) == {"version": "1.0.0"}
        assert [p.name for p in tmp_path.iterdir()] == ["ledger.json"]

    def test_permission_error_is_translated(self, workspace):
        with patch("phaseledger.workspace.atomic_write_text", side_effect=PermissionError("denied")):
            with pytest.raises(FilePermission):
                workspace.write_json(workspace.ledger_path, {})


class TestConfig:
    """Test cases for project config."""

    def test_save_and_load_config(self, workspace):
        config = workspace.save_config("Demo")
        loaded = workspace.load_config()

        assert loaded == config
        assert loaded["project_name"] == "Demo"
        assert loaded["version"] == "1.0.0"

    def test_project_name_defaults_to_root_name(self, workspace):
        assert workspace.save_config()["project_name"] == workspace.root.name

    def test_load_config_without_project(self, tmp_path):
        with pytest.raises(NotInitialized):
            Workspace(tmp_path).load_config()


class TestFeatureFolders:
    """Test cases for feature folder operations."""

    def test_scaffold_feature(self, workspace):
        """Scaffolding writes a typed initialization.md heading."""
        folder = workspace.scaffold_feature("bug-001-crash", "Crash on save", "bug", "Saving crashes")

        init = (folder / "planning" / "initialization.md").read_text()
        assert init.startswith("# Bug: Crash on save")
        assert "Saving crashes" in init
        assert "Root cause identified" in init
        assert workspace.list_folder_ids("todo") == ["bug-001-crash"]
        assert read_initialization_heading(folder) == ("bug", "Crash on save")

    def test_scaffold_permission_error(self, workspace):
        with patch.object(Path, "mkdir", side_effect=PermissionError("read-only")):
            with pytest.raises(FilePermission):
                workspace.scaffold_feature("task-001", "Task", "task")

    def test_move_to_removed_preserves_content(self, workspace):
        folder = workspace.scaffold_feature("task-001-cleanup", "Cleanup", "task")
        (folder / "notes.md").write_text("keep me")

        target = workspace.move_to_removed("task-001-cleanup")

        assert target == workspace.removed_path("task-001-cleanup")
        assert (target / "notes.md").read_text() == "keep me"
        assert not folder.exists()

    def test_move_missing_source(self, workspace):
        with pytest.raises(FolderMoveError, match="Cannot move"):
            workspace.move_to_removed("feature-404")

    def test_move_never_overwrites(self, workspace):
        """An existing target is an error, not an overwrite."""
        workspace.scaffold_feature("task-002", "Again", "task")
        workspace.removed_path("task-002").mkdir(parents=True)

        with pytest.raises(FolderMoveError) as exc_info:
            workspace.move_to_removed("task-002")

        assert "Target already exists" in exc_info.value.details
        assert workspace.feature_path("task-002").exists()

    def test_cross_device_move_falls_back_to_copy(self, workspace):
        folder = workspace.scaffold_feature("feature-003", "Big", "feature")

        with patch("phaseledger.workspace.os.rename", side_effect=OSError(18, "cross-device link")):
            target = workspace.move_to_removed("feature-003")

        assert (target / "planning" / "initialization.md").exists()
        assert not folder.exists()

    def test_archive_feature_writes_summary(self, workspace):
        workspace.scaffold_feature("feature-004-search", "Search", "feature")

        target = workspace.archive_feature("feature-004-search")

        assert target == workspace.done_path("feature-004-search")
        summary = (target / "summary.md").read_text()
        assert summary.startswith("# Feature Complete: Search")
        assert workspace.locate_feature("feature-004-search") == target

    def test_unarchive_feature(self, workspace):
        workspace.scaffold_feature("task-005", "Ship", "task")
        workspace.archive_feature("task-005")

        assert workspace.unarchive_feature("task-005") == workspace.feature_path("task-005")
        assert not workspace.folder_exists("task-005", "done")

    def test_artifact_count(self, workspace):
        folder = workspace.scaffold_feature("feature-006", "Count", "feature")
        (folder / "spec.md").write_text("# Spec")

        assert workspace.artifact_count("feature-006") == 2
        assert workspace.artifact_count("feature-404") == 0

    def test_read_initialization_heading_rejects_unknown(self, tmp_path):
        folder = tmp_path / "epic-001"
        (folder / "planning").mkdir(parents=True)
        (folder / "planning" / "initialization.md").write_text("# Epic: Something\n")

        assert read_initialization_heading(folder) is None


class TestTestingLog:
    """Test cases for appending test sessions to testing.md."""

    def test_first_session_creates_log(self, workspace):
        folder = workspace.scaffold_feature("feature-001", "Checkout", "feature")

        session = workspace.append_testing_session(
            "feature-001", "pass", "Happy path", timestamp="2024-01-01T00:00:00.000Z"
        )

        content = (folder / "testing.md").read_text()
        assert session == 1
        assert content.startswith("# Testing Log")
        assert "### Session 1\n\n**Status:** PASS\n**Timestamp:** 2024-01-01T00:00:00.000Z\n" in content
        assert "**Notes:** Happy path" in content

    def test_sessions_are_numbered_after_existing_ones(self, workspace):
        folder = workspace.scaffold_feature("feature-002", "Cart", "feature")
        (folder / "testing.md").write_text("# Testing\n\n### Session 1\n**Status:** FAIL\n")

        session = workspace.append_testing_session("feature-002", "pass", attachments=["shots/cart.png"])

        content = (folder / "testing.md").read_text()
        assert session == 2
        assert "**Notes:** No notes provided" in content
        assert "**Attachments:**\n- shots/cart.png" in content
        assert parse_testing_sessions(content) == ["fail", "pass"]

    def test_permission_error_is_translated(self, workspace):
        workspace.scaffold_feature("feature-003", "Locked", "feature")

        with patch("phaseledger.workspace.atomic_write_text", side_effect=PermissionError("read-only")):
            with pytest.raises(FilePermission):
                workspace.append_testing_session("feature-003", "fail")
