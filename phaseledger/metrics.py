"""Metrics side channel.

Per-feature metrics are recomputed from the ledger record, the feature's
history events and its folder; the project aggregate is a fold over the
stored per-feature records. Everything under ``.phaseledger/metrics`` is
derived and can be regenerated with :meth:`MetricsCollector.rebuild`.

Metrics are best effort. The collector's event handlers log and swallow
every failure so a broken metrics file can never block a ledger operation.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from .history import HistoryLog
from .ledger import LedgerStore
from .models import (
    PHASES,
    TERMINAL_PHASE,
    AggregatedMetrics,
    Feature,
    FeatureMetrics,
    MetricsIndex,
    PhaseTiming,
    duration_ms,
    empty_type_totals,
    utc_now,
)
from .phaseledger_logging import EventHooks
from .validators import read_artifact, read_task_progress
from .workspace import SESSION_HEADING_PATTERN, Workspace

logger = logging.getLogger("phaseledger.metrics")

_SESSION_STATUS_PATTERN = re.compile(r"\*\*Status:\*\*\s*(PASS|FAIL)", re.IGNORECASE)
_PLAIN_STATUS_PATTERN = re.compile(r"\*{0,2}status:\*{0,2}\s*(pass|fail)", re.IGNORECASE)

AVERAGED_FIELDS = (
    "total_duration_ms",
    "implementation_to_complete_ms",
    "testing_iterations",
    "testing_fail_count",
    "artifact_count",
    "retry_count",
)


def initialize_metrics(workspace: Workspace) -> None:
    """Write the zero aggregate and an empty index."""
    try:
        workspace.metrics_features_dir.mkdir(parents=True, exist_ok=True)
        workspace.write_json(workspace.aggregated_metrics_path, AggregatedMetrics().to_dict())
        workspace.write_json(workspace.metrics_index_path, MetricsIndex().to_dict())
    except Exception as e:
        logger.error(f"Failed to initialize metrics: {e}", exc_info=True)


# ----------------------------------------------------------------------
# Calculation
# ----------------------------------------------------------------------


def parse_testing_sessions(content: str) -> List[str]:
    """Outcome ('pass'/'fail') of each ``### Session N`` block in testing.md.

    A file without session headings but with a status line counts as one
    session.
    """
    starts = [match.start() for match in SESSION_HEADING_PATTERN.finditer(content)]
    if not starts:
        match = _PLAIN_STATUS_PATTERN.search(content)
        return [match.group(1).lower()] if match else []

    outcomes = []
    for position, start in enumerate(starts):
        end = starts[position + 1] if position + 1 < len(starts) else len(content)
        match = _SESSION_STATUS_PATTERN.search(content, start, end)
        if match:
            outcomes.append(match.group(1).lower())
    return outcomes


def calculate_feature_metrics(
    workspace: Workspace,
    feature: Feature,
    events: Iterable[Dict[str, Any]],
) -> FeatureMetrics:
    """Derive one feature's metrics; the same inputs always give the same output."""
    metrics = FeatureMetrics(
        feature_id=feature.id,
        title=feature.title,
        type=feature.type,
        phase=feature.phase,
        created_at=feature.created_at,
    )

    current = PHASES[0]
    phases: Dict[str, PhaseTiming] = {current: PhaseTiming(entered_at=feature.created_at)}

    for event in events:
        kind = event.get("event")
        if kind == "phase_transition":
            ts = event["ts"]
            timing = phases.get(current)
            if timing is not None and timing.exited_at is None:
                timing.exited_at = ts
                timing.duration_ms = duration_ms(timing.entered_at, ts)
            current = event.get("to", current)
            phases[current] = PhaseTiming(entered_at=ts)
            # a repair rewind out of complete reopens the feature
            metrics.completed_at = ts if current == TERMINAL_PHASE else None
        elif kind == "validation":
            if event.get("result") == "passed":
                metrics.validations_passed += 1
            else:
                metrics.validations_failed += 1
        elif kind == "validation_bypass":
            metrics.validations_bypassed += 1

    metrics.phases = phases

    if metrics.completed_at:
        metrics.total_duration_ms = duration_ms(feature.created_at, metrics.completed_at)
        implementation = phases.get("implementation")
        if implementation is not None:
            metrics.implementation_to_complete_ms = duration_ms(
                implementation.entered_at, metrics.completed_at
            )

    folder = workspace.locate_feature(feature.id)
    if folder is not None:
        testing = read_artifact(folder / "testing.md")
        if testing:
            outcomes = parse_testing_sessions(testing)
            metrics.testing_iterations = len(outcomes)
            metrics.testing_pass_count = outcomes.count("pass")
            metrics.testing_fail_count = outcomes.count("fail")
        progress = read_task_progress(folder / "tasks.md")
        metrics.tasks_total = progress.total
        metrics.tasks_completed = progress.completed
    metrics.artifact_count = workspace.artifact_count(feature.id)
    metrics.retry_count = feature.retry_count

    return metrics


def _average(values: List[float]) -> float:
    return round(sum(values) / len(values), 2)


def calculate_aggregated_metrics(all_metrics: Iterable[FeatureMetrics]) -> AggregatedMetrics:
    """Fold per-feature metrics into the project aggregate.

    Pure: never reads the previous aggregate, so it cannot drift from a
    full recompute.
    """
    all_metrics = list(all_metrics)
    by_type = empty_type_totals()
    done = todo = 0

    for metrics in all_metrics:
        bucket = "done" if metrics.is_complete else "todo"
        by_type.setdefault(metrics.type, {"done": 0, "todo": 0})[bucket] += 1
        if bucket == "done":
            done += 1
        else:
            todo += 1

    averages: Dict[str, float] = {}
    for name in AVERAGED_FIELDS:
        values = [getattr(m, name) for m in all_metrics if getattr(m, name) is not None]
        if values:
            averages[name] = _average(values)

    phase_averages: Dict[str, float] = {}
    for phase in PHASES[:-1]:
        values = [
            m.phases[phase].duration_ms
            for m in all_metrics
            if phase in m.phases and m.phases[phase].duration_ms is not None
        ]
        if values:
            phase_averages[f"{phase}_ms"] = _average(values)

    return AggregatedMetrics(
        done=done,
        todo=todo,
        by_type=by_type,
        averages=averages,
        phase_averages=phase_averages,
    )


# ----------------------------------------------------------------------
# Readers
# ----------------------------------------------------------------------


def load_feature_metrics(workspace: Workspace, feature_id: str) -> Optional[FeatureMetrics]:
    path = workspace.feature_metrics_path(feature_id)
    if not path.exists():
        return None
    return FeatureMetrics.from_dict(workspace.read_json(path))


def load_all_feature_metrics(workspace: Workspace) -> List[FeatureMetrics]:
    """Every stored per-feature record; unreadable files are skipped."""
    directory = workspace.metrics_features_dir
    if not directory.exists():
        return []
    records = []
    for path in sorted(directory.glob("*.json")):
        try:
            records.append(FeatureMetrics.from_dict(workspace.read_json(path)))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Skipping unreadable metrics file {path}: {e}")
    return records


def load_aggregated_metrics(workspace: Workspace) -> Optional[AggregatedMetrics]:
    path = workspace.aggregated_metrics_path
    if not path.exists():
        return None
    return AggregatedMetrics.from_dict(workspace.read_json(path))


def load_metrics_index(workspace: Workspace) -> Optional[MetricsIndex]:
    path = workspace.metrics_index_path
    if not path.exists():
        return None
    return MetricsIndex.from_dict(workspace.read_json(path))


# ----------------------------------------------------------------------
# Collector
# ----------------------------------------------------------------------


class MetricsCollector:
    """Keeps the metrics directory in step with ledger events."""

    def __init__(self, workspace: Workspace, store: LedgerStore, history: Optional[HistoryLog] = None):
        self.workspace = workspace
        self.store = store
        self.history = history or store.history

    def subscribe(self, hooks: EventHooks) -> None:
        """Attach the handlers to a hooks instance."""
        hooks.register_hook("feature_created", self.on_feature_created)
        hooks.register_hook("phase_transition", self.on_phase_transition)
        hooks.register_hook("feature_completed", self.on_feature_complete)
        hooks.register_hook("feature_removed", self.on_feature_removed)
        hooks.register_hook("review_failed", self.on_review_failed)
        hooks.register_hook("test_run_logged", self.on_test_run)

    # -- event handlers -------------------------------------------------

    def on_feature_created(self, feature_id: str, **event: Any) -> None:
        try:
            self.update_feature(feature_id)
            self.update_index()
            self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics update failed after creating {feature_id}: {e}", exc_info=True)

    def on_phase_transition(self, feature_id: str, **event: Any) -> None:
        try:
            self.update_feature(feature_id)
            self.update_index()
            if event.get("from_phase") == TERMINAL_PHASE:
                self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics update failed for transition of {feature_id}: {e}", exc_info=True)

    def on_feature_complete(self, feature_id: str, **event: Any) -> None:
        try:
            self.update_feature(feature_id)
            self.update_index()
            self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics update failed on completion of {feature_id}: {e}", exc_info=True)

    def on_feature_removed(self, feature_id: str, **event: Any) -> None:
        try:
            self.workspace.feature_metrics_path(feature_id).unlink(missing_ok=True)
            self.update_index()
            self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics cleanup failed for removed {feature_id}: {e}", exc_info=True)

    def on_review_failed(self, feature_id: str, **event: Any) -> None:
        try:
            self.update_feature(feature_id)
            self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics update failed after review failure of {feature_id}: {e}", exc_info=True)

    def on_test_run(self, feature_id: str, **event: Any) -> None:
        try:
            self.update_feature(feature_id)
            self.update_aggregate()
        except Exception as e:
            logger.error(f"Metrics update failed after test run of {feature_id}: {e}", exc_info=True)

    # -- recomputation --------------------------------------------------

    def update_feature(self, feature_id: str) -> Optional[FeatureMetrics]:
        feature = self.store.find(feature_id)
        if feature is None:
            logger.debug(f"No ledger entry for {feature_id}; skipping metrics")
            return None
        metrics = calculate_feature_metrics(self.workspace, feature, self.history.for_feature(feature_id))
        self.workspace.write_json(self.workspace.feature_metrics_path(feature_id), metrics.to_dict())
        return metrics

    def update_index(self) -> MetricsIndex:
        records = load_all_feature_metrics(self.workspace)
        index = MetricsIndex(
            feature_count=len(records),
            completed_count=sum(1 for record in records if record.is_complete),
            last_updated=utc_now(),
        )
        self.workspace.write_json(self.workspace.metrics_index_path, index.to_dict())
        return index

    def update_aggregate(self) -> AggregatedMetrics:
        aggregate = calculate_aggregated_metrics(load_all_feature_metrics(self.workspace))
        self.workspace.write_json(self.workspace.aggregated_metrics_path, aggregate.to_dict())
        return aggregate

    def rebuild(self) -> AggregatedMetrics:
        """Regenerate every metrics file from the ledger and history.

        Unlike the event handlers this raises, since it runs on request.
        """
        features = self.store.list_features()
        known = {feature.id for feature in features}
        self.workspace.metrics_features_dir.mkdir(parents=True, exist_ok=True)
        for path in self.workspace.metrics_features_dir.glob("*.json"):
            if path.stem not in known:
                path.unlink()

        events = self.history.read()
        for feature in features:
            feature_events = [event for event in events if event.get("feature_id") == feature.id]
            metrics = calculate_feature_metrics(self.workspace, feature, feature_events)
            self.workspace.write_json(self.workspace.feature_metrics_path(feature.id), metrics.to_dict())

        self.update_index()
        aggregate = self.update_aggregate()
        logger.info(f"Rebuilt metrics for {len(features)} feature(s)")
        return aggregate
