"""
Integration tests for the full feature lifecycle.

These tests drive a real project on disk through the WorkflowManager:
initialization, gated advancement, completion, metrics and removal.
"""

import json
import tempfile
from pathlib import Path

import pytest

from phaseledger.workflow import WorkflowManager


class TestProjectLifecycle:
    """End-to-end scenarios over a temporary project."""

    @pytest.fixture
    def temp_project_dir(self):
        """Create a temporary project directory for integration testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir)

    @pytest.fixture
    def manager(self, temp_project_dir):
        manager = WorkflowManager(temp_project_dir)
        manager.init_project()
        return manager

    def _read(self, path):
        return json.loads(path.read_text())

    def test_fresh_project_zero_state(self, manager):
        """
        Given: a freshly initialized project
        Then: aggregated metrics show zero counts for every type and the index is empty
        """
        aggregated = self._read(manager.workspace.aggregated_metrics_path)
        index = self._read(manager.workspace.metrics_index_path)

        assert aggregated["totals"]["done"] == 0
        assert aggregated["totals"]["todo"] == 0
        for feature_type in ("feature", "bug", "task"):
            assert aggregated["totals"]["by_type"][feature_type] == {"done": 0, "todo": 0}
        assert index["feature_count"] == 0
        assert self._read(manager.workspace.ledger_path)["features"] == []

    def test_bug_b1_scenario(self, manager):
        """
        Given: bug "B1" in planning
        When: it is advanced to complete without testing.md, then with a passing testing.md
        Then: the first attempt fails with one error, the second succeeds with a warning,
              fires a completion event and increments totals.by_type.bug.done
        """
        completions = []
        manager.hooks.register_hook("feature_completed", lambda **data: completions.append(data))

        bug_id = manager.create_feature("B1", "bug")["feature"]["id"]
        before = self._read(manager.workspace.aggregated_metrics_path)["totals"]["by_type"]["bug"]["done"]

        blocked = manager.advance_feature(bug_id, "complete")
        assert blocked["advanced"] is False
        assert blocked["validation"]["valid"] is False
        assert blocked["validation"]["errors"] == ["testing.md is missing or empty"]
        assert manager.store.get(bug_id).phase == "planning"
        assert completions == []

        (manager.workspace.feature_path(bug_id) / "testing.md").write_text("Status: PASS, no regression notes")
        result = manager.advance_feature(bug_id, "complete")

        assert result["advanced"] is True
        assert result["validation"]["valid"] is True
        assert result["validation"]["errors"] == []
        assert len(result["validation"]["warnings"]) == 1
        assert manager.store.get(bug_id).phase == "complete"
        assert len(completions) == 1
        assert completions[0]["feature_id"] == bug_id

        after = self._read(manager.workspace.aggregated_metrics_path)["totals"]["by_type"]["bug"]["done"]
        assert after == before + 1

    def test_feature_walks_every_gate(self, manager):
        """A feature advanced one phase at a time, writing each gate's artifacts."""
        feature_id = manager.create_feature("Search", description="Full-text search")["feature"]["id"]
        folder = manager.workspace.feature_path(feature_id)

        assert manager.advance_feature(feature_id)["to_phase"] == "refinement"

        assert manager.advance_feature(feature_id)["advanced"] is False
        (folder / "planning" / "requirements.md").write_text("# Requirements\n- search by title")
        (folder / "spec.md").write_text("# Spec\nUse an inverted index.")
        (folder / "tasks.md").write_text("- [ ] build index\n- [ ] add endpoint\n")
        assert manager.advance_feature(feature_id)["to_phase"] == "implementation"

        assert manager.advance_feature(feature_id)["advanced"] is False
        (folder / "tasks.md").write_text("- [x] build index\n- [x] add endpoint\n")
        (folder / "review.md").write_text("# Review\n## Verdict\nPASS\n")
        assert manager.advance_feature(feature_id)["to_phase"] == "testing"

        (folder / "testing.md").write_text(
            "# Testing\n### Session 1\n**Status:** FAIL\n### Session 2\n**Status:** PASS\n"
        )
        done = manager.complete_feature(feature_id, archive=True)
        assert done["advanced"] is True

        metrics = manager.get_metrics(feature_id)["metrics"]
        assert metrics["phase"] == "complete"
        assert metrics["testing"] == {"iterations": 2, "pass_count": 1, "fail_count": 1}
        assert metrics["tasks"] == {"total": 2, "completed": 2}
        assert metrics["validations"]["failed"] == 2
        assert metrics["validations"]["passed"] == 4
        assert set(metrics["phases"]) == {"planning", "refinement", "implementation", "testing", "complete"}
        assert metrics["total_duration_ms"] is not None

        aggregated = manager.get_metrics()["aggregated"]
        assert aggregated["totals"]["by_type"]["feature"] == {"done": 1, "todo": 0}
        assert "planning_ms" in aggregated["phase_averages"]
        assert manager.check_repair()["healthy"] is True

    def test_totals_stay_consistent_across_types(self, manager):
        """by_type sums always equal the overall totals."""
        ids = [
            manager.create_feature("F", "feature")["feature"]["id"],
            manager.create_feature("B", "bug")["feature"]["id"],
            manager.create_feature("T", "task")["feature"]["id"],
        ]
        manager.complete_feature(ids[2], force=True)
        manager.remove_feature(ids[0])

        totals = manager.get_metrics()["aggregated"]["totals"]
        assert totals["done"] == sum(c["done"] for c in totals["by_type"].values()) == 1
        assert totals["todo"] == sum(c["todo"] for c in totals["by_type"].values()) == 1
        assert manager.get_metrics()["index"]["feature_count"] == 2

    def test_removed_ids_are_not_reused(self, manager):
        first = manager.create_feature("Temp", "task")["feature"]["id"]
        manager.remove_feature(first)

        second = manager.create_feature("Temp", "task")["feature"]["id"]

        assert first != second
        assert manager.workspace.folder_exists(first, "removed")

    def test_history_tells_the_story(self, manager):
        task_id = manager.create_feature("Audit", "task")["feature"]["id"]
        manager.complete_feature(task_id, force=True)

        events = [e["event"] for e in manager.history.for_feature(task_id)]

        assert events == [
            "feature_created",
            "validation",
            "validation_bypass",
            "phase_transition",
            "feature_completed",
        ]

    def test_manual_testing_loop(self, manager):
        """
        Given: a task that reaches testing
        When: the first manual run fails and the second passes
        Then: the failure sends it back to implementation, the retest is logged
              as session 2 and the feature completes with both sessions counted
        """
        task_id = manager.create_feature("Export CSV", "task")["feature"]["id"]
        folder = manager.workspace.feature_path(task_id)
        (folder / "tasks.md").write_text("- [x] write exporter\n")
        (folder / "review.md").write_text("# Review\n## Verdict\nPASS\n")
        manager.advance_feature(task_id, "implementation", force=True)
        assert manager.advance_feature(task_id)["to_phase"] == "testing"

        failed = manager.log_test_run(task_id, "fail", notes="Commas are not escaped")
        assert failed["phase"] == "implementation"
        assert manager.advance_feature(task_id)["to_phase"] == "testing"
        passed = manager.log_test_run("export", "pass", notes="Escaping fixed")
        assert passed["session"] == 2

        assert manager.complete_feature(task_id)["advanced"] is True
        metrics = manager.get_metrics(task_id)["metrics"]
        assert metrics["testing"] == {"iterations": 2, "pass_count": 1, "fail_count": 1}
        assert metrics["retry_count"] == 0
        runs = [e for e in manager.history.for_feature(task_id) if e["event"] == "test_run"]
        assert [(e["session"], e["status"]) for e in runs] == [(1, "fail"), (2, "pass")]

    def test_repeated_review_failures_block_the_feature(self, manager):
        """Five failed attempts at testing block the feature until it is rewound."""
        task_id = manager.create_feature("Flaky", "task")["feature"]["id"]
        manager.advance_feature(task_id, "implementation", force=True)

        results = [manager.advance_feature(task_id) for _ in range(5)]

        assert results[-1]["blocked"] is True
        assert manager.advance_feature(task_id)["code"] == "FEATURE_BLOCKED"
        assert manager.get_metrics(task_id)["metrics"]["retry_count"] == 5

        manager.rewind_feature(task_id, "refinement")
        feature = manager.show_feature(task_id)["feature"]
        assert (feature["retry_count"], feature["blocked_reason"]) == (0, None)
        kinds = [e["event"] for e in manager.history.for_feature(task_id)]
        assert kinds.count("review_failed") == 5
        assert "feature_blocked" in kinds and "feature_unblocked" in kinds
