"""Unit tests for phaseledger workflow management.

This module tests the WorkflowManager facade: response shapes, error
translation and the two-step operations (create, remove).
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from phaseledger.ledger import LedgerStore
from phaseledger.transitions import MAX_REVIEW_RETRIES
from phaseledger.workflow import WorkflowManager
from phaseledger.workspace import Workspace


@pytest.fixture
def manager(tmp_path):
    manager = WorkflowManager(tmp_path)
    manager.init_project(project_name="demo")
    return manager


class TestWorkflowManagerInitialization:
    """Test cases for WorkflowManager initialization."""

    def test_workflow_manager_creation(self):
        """Creating a manager writes nothing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = WorkflowManager(temp_dir)

            assert manager.workspace.root == Path(temp_dir).resolve()
            assert not manager.workspace.base_dir.exists()

    def test_collector_is_subscribed(self, tmp_path):
        manager = WorkflowManager(tmp_path)

        for event_type in ("feature_created", "phase_transition", "feature_completed", "feature_removed"):
            assert manager.hooks.hooks[event_type]

    def test_init_project(self, tmp_path):
        manager = WorkflowManager(tmp_path)

        result = manager.init_project(project_name="demo")

        assert result["initialized"] is True
        assert result["config"]["project_name"] == "demo"
        assert result["next_suggested_step"] == "create_feature"
        assert manager.workspace.is_initialized()

    def test_init_twice_is_a_no_op(self, manager):
        manager.create_feature("Keep")

        result = manager.init_project()

        assert result["initialized"] is False
        assert "already initialized" in result["message"]
        assert manager.list_features()["count"] == 1


class TestErrorResponses:
    """Test cases for error translation."""

    def test_uninitialized_project(self, tmp_path):
        result = WorkflowManager(tmp_path).list_features()

        assert result["code"] == "NOT_INITIALIZED"
        assert result["next_suggested_step"] == "init_project"
        assert "init_project" in result["suggestion"]

    def test_corrupted_ledger_points_at_repair(self, manager):
        manager.workspace.ledger_path.write_text("garbage")

        result = manager.list_features()

        assert result["code"] == "LEDGER_CORRUPTED"
        assert "check_repair" in result["suggestion"]

    @pytest.mark.parametrize("record", [
        {"id": "feature-001", "title": 5, "type": "feature", "phase": "planning",
         "created_at": "2024-01-01T00:00:00.000Z"},
        {"id": ["feature-001"], "title": "A", "type": "feature", "phase": "planning",
         "created_at": "2024-01-01T00:00:00.000Z"},
    ])
    def test_mistyped_ledger_record_is_corrupted(self, manager, record):
        """A record with a wrong field type is reported as corruption, not a crash."""
        manager.workspace.ledger_path.write_text(json.dumps({"version": "1.0.0", "features": [record]}))

        for result in (manager.list_features(), manager.show_feature("feature-001")):
            assert result["code"] == "LEDGER_CORRUPTED"

    def test_empty_title(self, manager):
        result = manager.create_feature("   ")

        assert result["code"] == "VALIDATION_FAILED"
        assert result["issues"][0]["message"] == "Title cannot be empty"

    def test_unknown_feature(self, manager):
        result = manager.advance_feature("feature-404")

        assert result["code"] == "FEATURE_NOT_FOUND"

    def test_ambiguous_fragment_lists_candidates(self, manager):
        login = manager.create_feature("Login")["feature"]["id"]
        logout = manager.create_feature("Logout")["feature"]["id"]

        for result in (
            manager.show_feature("log"),
            manager.advance_feature("log"),
            manager.check_gate("log"),
            manager.remove_feature("log"),
        ):
            assert result["code"] == "AMBIGUOUS_FEATURE_ID"
            assert result["candidates"] == [login, logout]
        assert manager.store.get(login).phase == "planning"
        assert manager.workspace.folder_exists(logout, "todo")

    def test_unique_fragment_works_for_every_operation(self, manager):
        feature_id = manager.create_feature("Checkout", "task")["feature"]["id"]

        assert manager.check_gate("checkout")["feature_id"] == feature_id
        assert manager.advance_feature("checkout")["feature_id"] == feature_id
        assert manager.get_metrics("checkout")["feature_id"] == feature_id
        assert manager.rewind_feature("checkout", "planning")["feature_id"] == feature_id
        assert manager.remove_feature("checkout")["feature_id"] == feature_id

    def test_show_missing_feature(self, manager):
        result = manager.show_feature("feature-404")

        assert result["code"] == "FEATURE_NOT_FOUND"
        assert result["next_suggested_step"] == "list_features"


class TestCreateFeature:
    """Test cases for create_feature."""

    def test_create(self, manager):
        result = manager.create_feature("Login page", description="Email + password")

        assert result["feature"]["id"] == "feature-001-login-page"
        assert Path(result["folder"]).is_dir()
        assert "initialization.md" in result["workflow_tip"]

    def test_bug_tip_mentions_investigation(self, manager):
        result = manager.create_feature("Crash", "bug")

        assert "investigation.md" in result["workflow_tip"]

    def test_scaffold_failure_keeps_ledger_entry(self, manager):
        with patch.object(Workspace, "scaffold_feature", side_effect=OSError("no space left")):
            result = manager.create_feature("Half made")

        assert result["code"] == "SCAFFOLD_FAILED"
        assert result["rolled_back"] is False
        assert result["details"] == "no space left"
        assert manager.store.find(result["feature"]["id"]) is not None

    def test_scaffold_failure_with_rollback(self, manager):
        with patch.object(Workspace, "scaffold_feature", side_effect=OSError("no space left")):
            result = manager.create_feature("Half made", rollback_on_scaffold_failure=True)

        assert result["rolled_back"] is True
        assert manager.store.find(result["feature"]["id"]) is None


class TestAdvanceAndComplete:
    """Test cases for transitions through the facade."""

    def test_advance_defaults_to_next_phase(self, manager):
        feature_id = manager.create_feature("Step")["feature"]["id"]

        result = manager.advance_feature(feature_id)

        assert result["advanced"] is True
        assert result["to_phase"] == "refinement"
        assert result["next_suggested_step"] == "advance_feature"

    def test_blocked_advance_is_not_an_error(self, manager):
        feature_id = manager.create_feature("Blocked")["feature"]["id"]

        result = manager.advance_feature(feature_id, "implementation")

        assert result["advanced"] is False
        assert "error" not in result
        assert result["validation"]["valid"] is False
        assert result["next_suggested_step"] == "check_gate"

    def test_backwards_is_invalid(self, manager):
        feature_id = manager.create_feature("Step")["feature"]["id"]
        manager.advance_feature(feature_id)

        result = manager.advance_feature(feature_id, "planning")

        assert result["code"] == "INVALID_TRANSITION"

    def test_check_gate(self, manager):
        feature_id = manager.create_feature("Dry", "bug")["feature"]["id"]

        result = manager.check_gate(feature_id)

        assert result["ready"] is False
        assert result["validation"]["errors"] == ["investigation.md is missing or empty"]
        assert manager.store.get(feature_id).phase == "planning"

    def test_complete_and_archive(self, manager):
        feature_id = manager.create_feature("Ship", "task")["feature"]["id"]
        (manager.workspace.feature_path(feature_id) / "testing.md").write_text("**Status:** PASS")

        result = manager.complete_feature(feature_id, archive=True)

        assert result["advanced"] is True
        assert Path(result["archived_to"]) == manager.workspace.done_path(feature_id)
        assert manager.check_repair()["healthy"] is True

    def test_already_complete(self, manager):
        feature_id = manager.create_feature("Ship", "task")["feature"]["id"]
        manager.complete_feature(feature_id, force=True)

        result = manager.advance_feature(feature_id)

        assert result["advanced"] is False
        assert result["code"] == "INVALID_TRANSITION"


class TestReviewRetries:
    """Repeated failed gates into testing."""

    def test_failed_attempts_are_counted(self, manager):
        feature_id = manager.create_feature("Flaky", "task")["feature"]["id"]
        manager.advance_feature(feature_id, "implementation", force=True)

        result = manager.advance_feature(feature_id)

        assert result["advanced"] is False
        assert result["retry_count"] == 1
        assert result["retries_remaining"] == MAX_REVIEW_RETRIES - 1
        assert manager.get_metrics(feature_id)["metrics"]["retry_count"] == 1

    def test_blocked_after_limit(self, manager):
        feature_id = manager.create_feature("Stuck", "task")["feature"]["id"]
        manager.advance_feature(feature_id, "implementation", force=True)

        for _ in range(MAX_REVIEW_RETRIES - 1):
            manager.advance_feature(feature_id)
        last = manager.advance_feature(feature_id)
        refused = manager.advance_feature(feature_id)

        assert last["blocked"] is True
        assert last["next_suggested_step"] == "rewind_feature"
        assert refused["code"] == "FEATURE_BLOCKED"
        assert manager.show_feature(feature_id)["feature"]["blocked_reason"]
        assert manager.check_gate(feature_id)["ready"] is False

    def test_forced_advance_clears_block(self, manager):
        feature_id = manager.create_feature("Stuck", "task")["feature"]["id"]
        manager.advance_feature(feature_id, "implementation", force=True)
        for _ in range(MAX_REVIEW_RETRIES):
            manager.advance_feature(feature_id)

        result = manager.advance_feature(feature_id, force=True)

        assert result["advanced"] is True
        feature = manager.store.get(feature_id)
        assert (feature.retry_count, feature.blocked_reason) == (0, None)
        assert manager.get_metrics(feature_id)["metrics"]["retry_count"] == 0


class TestLogTestRun:
    """Test cases for recording manual test runs."""

    @pytest.fixture
    def in_testing(self, manager):
        feature_id = manager.create_feature("Checkout", "feature")["feature"]["id"]
        manager.advance_feature(feature_id, "testing", force=True)
        return feature_id

    def test_pass_appends_session(self, manager, in_testing):
        result = manager.log_test_run(in_testing, "PASS", notes="Happy path works")

        assert result["session"] == 1
        assert result["status"] == "pass"
        assert result["next_suggested_step"] == "complete_feature"
        testing = (manager.workspace.feature_path(in_testing) / "testing.md").read_text()
        assert "### Session 1" in testing
        assert "**Status:** PASS" in testing
        assert "**Notes:** Happy path works" in testing
        assert manager.store.get(in_testing).phase == "testing"
        assert manager.check_gate(in_testing)["ready"] is True

    def test_fail_returns_to_implementation(self, manager, in_testing):
        result = manager.log_test_run(in_testing, "fail", notes="Total is wrong")

        assert result["returned_to_implementation"] is True
        assert result["phase"] == "implementation"
        assert manager.store.get(in_testing).phase == "implementation"
        events = [e["event"] for e in manager.history.for_feature(in_testing)]
        assert events[-3:] == ["test_run", "phase_transition", "repair"]

    def test_sessions_feed_metrics(self, manager, in_testing):
        manager.log_test_run(in_testing, "fail")
        manager.advance_feature(in_testing, "testing", force=True)
        manager.log_test_run(in_testing, "pass")

        metrics = manager.get_metrics(in_testing)["metrics"]

        assert metrics["testing"] == {"iterations": 2, "pass_count": 1, "fail_count": 1}

    def test_only_in_testing_phase(self, manager):
        feature_id = manager.create_feature("Early")["feature"]["id"]

        result = manager.log_test_run(feature_id, "pass")

        assert result["code"] == "VALIDATION_FAILED"
        assert not (manager.workspace.feature_path(feature_id) / "testing.md").exists()

    def test_invalid_status(self, manager, in_testing):
        result = manager.log_test_run(in_testing, "flaky")

        assert result["code"] == "VALIDATION_FAILED"
        assert result["issues"][0]["expected"] == "pass, fail"


class TestRemoveFeature:
    """Test cases for the two-step remove."""

    def test_remove(self, manager):
        feature_id = manager.create_feature("Withdraw")["feature"]["id"]

        result = manager.remove_feature(feature_id)

        assert result["removed"] is True
        assert manager.workspace.folder_exists(feature_id, "removed")
        assert manager.store.find(feature_id) is None

    def test_missing_folder_leaves_ledger(self, manager):
        feature_id = manager.create_feature("No folder")["feature"]["id"]
        manager.workspace.move_to_removed(feature_id)
        manager.workspace.removed_path(feature_id).rename(manager.workspace.root / "elsewhere")

        result = manager.remove_feature(feature_id)

        assert result["code"] == "FOLDER_MOVE_FAILED"
        assert manager.store.find(feature_id) is not None

    def test_ledger_failure_after_move_is_critical(self, manager):
        feature_id = manager.create_feature("Interrupted")["feature"]["id"]

        with patch.object(LedgerStore, "remove", side_effect=OSError("disk full")):
            result = manager.remove_feature(feature_id)

        assert result["code"] == "REMOVAL_INCOMPLETE"
        assert result["critical"] is True
        assert result["error"].startswith("CRITICAL")
        assert result["next_suggested_step"] == "check_repair"

        report = manager.check_repair()
        assert report["removed_in_ledger"] == [feature_id]
        repaired = manager.apply_repair(finish_removals=True)
        assert repaired["healthy"] is True


class TestRepairAndMetrics:
    """Test cases for repair and metrics operations."""

    def test_apply_repair_requires_a_choice(self, manager):
        result = manager.apply_repair()

        assert result["error"] == "No repair selected"

    def test_check_repair_suggestions(self, manager):
        manager.store.add("Orphan")

        result = manager.check_repair()

        assert result["healthy"] is False
        assert any("drop_orphans" in s for s in result["suggestions"])

    def test_rewind_archived_feature(self, manager):
        feature_id = manager.create_feature("Reopen", "task")["feature"]["id"]
        manager.complete_feature(feature_id, force=True, archive=True)

        result = manager.rewind_feature(feature_id, "testing")

        assert result["to_phase"] == "testing"
        assert manager.workspace.folder_exists(feature_id, "todo")
        assert manager.get_metrics()["aggregated"]["totals"]["by_type"]["task"] == {"done": 0, "todo": 1}

    def test_get_metrics(self, manager):
        feature_id = manager.create_feature("Measured", "bug")["feature"]["id"]

        project = manager.get_metrics()
        single = manager.get_metrics(feature_id)

        assert project["index"]["feature_count"] == 1
        assert project["aggregated"]["totals"]["todo"] == 1
        assert single["metrics"]["type"] == "bug"
        assert manager.get_metrics("bug-404")["next_suggested_step"] == "rebuild_metrics"
        assert manager.get_metrics("bug-404")["code"] == "FEATURE_NOT_FOUND"

    def test_rebuild_metrics(self, manager):
        manager.create_feature("One")
        manager.workspace.aggregated_metrics_path.unlink()

        result = manager.rebuild_metrics()

        assert result["aggregated"]["totals"]["todo"] == 1
        assert manager.get_metrics()["aggregated"]["totals"]["todo"] == 1

    def test_show_feature(self, manager):
        feature_id = manager.create_feature("Shown")["feature"]["id"]

        result = manager.show_feature("001")

        assert result["feature"]["id"] == feature_id
        assert result["next_phase"] == "refinement"
        assert result["history"][0]["event"] == "feature_created"
        assert result["metrics"]["feature_id"] == feature_id

    def test_workflow_guide(self, tmp_path):
        guide = WorkflowManager(tmp_path).get_workflow_guide()

        assert guide["phases"][0] == "planning"
        assert guide["gates"]["refinement"]["task"] is None
        assert guide["gates"]["complete"]["bug"] == "validate_bug_testing"
        assert len(guide["steps"]) == 5
        assert guide["max_review_retries"] == MAX_REVIEW_RETRIES
        assert guide["next_suggested_step"] == "init_project"
