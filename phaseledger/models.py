"""Data models for the phaseledger feature ledger.

This module contains the core data structures used throughout phaseledger,
representing ledger entries, gate verdicts, transition events, derived
metrics and repair reports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


PHASES = ("planning", "refinement", "implementation", "testing", "complete")
FEATURE_TYPES = ("feature", "bug", "task")
INITIAL_PHASE = PHASES[0]
TERMINAL_PHASE = PHASES[-1]

LEDGER_VERSION = "1.0.0"
METRICS_VERSION = "1.0.0"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by :func:`utc_now`."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def duration_ms(start: str, end: str) -> int:
    return int((parse_timestamp(end) - parse_timestamp(start)).total_seconds() * 1000)


def phase_index(phase: str) -> int:
    """Position of ``phase`` in the lifecycle, -1 if unknown."""
    try:
        return PHASES.index(phase)
    except ValueError:
        return -1


def next_phase(phase: str) -> Optional[str]:
    """The phase after ``phase``, or None at the end of the lifecycle."""
    index = phase_index(phase)
    if index == -1 or index >= len(PHASES) - 1:
        return None
    return PHASES[index + 1]


@dataclass(slots=True)
class Feature:
    """A single ledger entry."""

    id: str
    title: str
    type: str
    phase: str = INITIAL_PHASE
    external_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    retry_count: int = 0
    blocked_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "phase": self.phase,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "retry_count": self.retry_count,
            "blocked_reason": self.blocked_reason,
        }
        if self.external_id is not None:
            data["external_id"] = self.external_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            title=data["title"],
            type=data["type"],
            phase=data["phase"],
            external_id=data.get("external_id"),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            retry_count=data.get("retry_count", 0),
            blocked_reason=data.get("blocked_reason"),
        )

    @property
    def is_complete(self) -> bool:
        return self.phase == TERMINAL_PHASE

    def validate(self) -> List[str]:
        """Validate the record and return any issues."""
        issues = []

        if not self.id or not isinstance(self.id, str):
            issues.append("Feature ID is required")
        if not self.title or not isinstance(self.title, str) or not self.title.strip():
            issues.append("Title is required")
        if not isinstance(self.type, str) or self.type not in FEATURE_TYPES:
            issues.append(f"Invalid feature type: {self.type!s}")
        if not isinstance(self.phase, str) or self.phase not in PHASES:
            issues.append(f"Invalid phase: {self.phase!s}")
        for name in ("created_at", "updated_at"):
            if not isinstance(getattr(self, name), str):
                issues.append(f"Invalid timestamp in {name}")
        if self.external_id is not None and not isinstance(self.external_id, str):
            issues.append("external_id must be a string")
        # bool is an int subclass
        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int) or self.retry_count < 0:
            issues.append(f"Invalid retry count: {self.retry_count!s}")
        if self.blocked_reason is not None and not isinstance(self.blocked_reason, str):
            issues.append("blocked_reason must be a string")

        return issues


@dataclass(slots=True)
class Ledger:
    """All tracked features plus ledger-level metadata."""

    features: List[Feature] = field(default_factory=list)
    version: str = LEDGER_VERSION
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "updated_at": self.updated_at,
            "features": [feature.to_dict() for feature in self.features],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ledger":
        """Create from dictionary representation."""
        features = data["features"]
        if not isinstance(features, list):
            raise TypeError("'features' must be a list")
        return cls(
            features=[Feature.from_dict(item) for item in features],
            version=data.get("version", LEDGER_VERSION),
            updated_at=data.get("updated_at", utc_now()),
        )

    def ids(self) -> List[str]:
        return [feature.id for feature in self.features]

    def get(self, feature_id: str) -> Optional[Feature]:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None

    def validate(self) -> List[str]:
        """Validate every record and the id uniqueness invariant."""
        issues: List[str] = []
        seen: set[str] = set()
        for feature in self.features:
            label = feature.id if isinstance(feature.id, str) and feature.id else "<no id>"
            issues.extend(f"{label}: {issue}" for issue in feature.validate())
            if not isinstance(feature.id, str):
                continue
            if feature.id in seen:
                issues.append(f"Duplicate feature ID: {feature.id}")
            seen.add(feature.id)
        return issues


@dataclass(slots=True)
class ValidationIssue:
    """One finding reported by a phase gate."""

    level: str  # 'error' or 'warning'
    message: str
    file: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {"level": self.level, "message": self.message}
        for key in ("file", "expected", "actual"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(slots=True)
class ValidationResult:
    """Verdict of a phase gate.

    ``valid``, ``errors`` and ``warnings`` are projections of ``issues`` and
    cannot be set on their own.
    """

    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not any(issue.level == "error" for issue in self.issues)

    @property
    def errors(self) -> List[str]:
        return [issue.message for issue in self.issues if issue.level == "error"]

    @property
    def warnings(self) -> List[str]:
        return [issue.message for issue in self.issues if issue.level == "warning"]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(slots=True)
class TransitionEvent:
    """Emitted once per committed phase change."""

    feature_id: str
    from_phase: str
    to_phase: str
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_id": self.feature_id,
            "from_phase": self.from_phase,
            "to_phase": self.to_phase,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class TransitionOutcome:
    """What happened when a feature was asked to advance."""

    feature_id: str
    from_phase: str
    to_phase: str
    advanced: bool
    bypassed: bool = False
    validation: Optional[ValidationResult] = None
    event: Optional[TransitionEvent] = None
    retry_count: int = 0
    blocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_id": self.feature_id,
            "from_phase": self.from_phase,
            "to_phase": self.to_phase,
            "advanced": self.advanced,
            "bypassed": self.bypassed,
            "gated": self.validation is not None,
            "validation": self.validation.to_dict() if self.validation else None,
            "event": self.event.to_dict() if self.event else None,
            "retry_count": self.retry_count,
            "blocked": self.blocked,
        }


@dataclass(slots=True)
class PhaseTiming:
    entered_at: str
    exited_at: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entered_at": self.entered_at,
            "exited_at": self.exited_at,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseTiming":
        """Create from dictionary representation."""
        return cls(
            entered_at=data["entered_at"],
            exited_at=data.get("exited_at"),
            duration_ms=data.get("duration_ms"),
        )


@dataclass(slots=True)
class FeatureMetrics:
    """Derived per-feature measures; safe to delete and regenerate."""

    feature_id: str
    title: str
    type: str
    phase: str
    created_at: str
    completed_at: Optional[str] = None
    total_duration_ms: Optional[int] = None
    implementation_to_complete_ms: Optional[int] = None
    phases: Dict[str, PhaseTiming] = field(default_factory=dict)
    testing_iterations: int = 0
    testing_pass_count: int = 0
    testing_fail_count: int = 0
    validations_passed: int = 0
    validations_failed: int = 0
    validations_bypassed: int = 0
    artifact_count: int = 0
    tasks_total: int = 0
    tasks_completed: int = 0
    retry_count: int = 0

    @property
    def is_complete(self) -> bool:
        return self.phase == TERMINAL_PHASE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_id": self.feature_id,
            "title": self.title,
            "type": self.type,
            "phase": self.phase,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "total_duration_ms": self.total_duration_ms,
            "implementation_to_complete_ms": self.implementation_to_complete_ms,
            "phases": {name: timing.to_dict() for name, timing in self.phases.items()},
            "testing": {
                "iterations": self.testing_iterations,
                "pass_count": self.testing_pass_count,
                "fail_count": self.testing_fail_count,
            },
            "validations": {
                "passed": self.validations_passed,
                "failed": self.validations_failed,
                "bypassed": self.validations_bypassed,
            },
            "artifact_count": self.artifact_count,
            "tasks": {"total": self.tasks_total, "completed": self.tasks_completed},
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureMetrics":
        """Create from dictionary representation."""
        testing = data.get("testing", {})
        validations = data.get("validations", {})
        tasks = data.get("tasks", {})
        return cls(
            feature_id=data["feature_id"],
            title=data["title"],
            type=data["type"],
            phase=data["phase"],
            created_at=data["created_at"],
            completed_at=data.get("completed_at"),
            total_duration_ms=data.get("total_duration_ms"),
            implementation_to_complete_ms=data.get("implementation_to_complete_ms"),
            phases={
                name: PhaseTiming.from_dict(timing)
                for name, timing in data.get("phases", {}).items()
            },
            testing_iterations=testing.get("iterations", 0),
            testing_pass_count=testing.get("pass_count", 0),
            testing_fail_count=testing.get("fail_count", 0),
            validations_passed=validations.get("passed", 0),
            validations_failed=validations.get("failed", 0),
            validations_bypassed=validations.get("bypassed", 0),
            artifact_count=data.get("artifact_count", 0),
            tasks_total=tasks.get("total", 0),
            tasks_completed=tasks.get("completed", 0),
            retry_count=data.get("retry_count", 0),
        )


def empty_type_totals() -> Dict[str, Dict[str, int]]:
    return {feature_type: {"done": 0, "todo": 0} for feature_type in FEATURE_TYPES}


@dataclass(slots=True)
class AggregatedMetrics:
    """Project-wide rollup; a cache over the set of FeatureMetrics."""

    done: int = 0
    todo: int = 0
    by_type: Dict[str, Dict[str, int]] = field(default_factory=empty_type_totals)
    averages: Dict[str, float] = field(default_factory=dict)
    phase_averages: Dict[str, float] = field(default_factory=dict)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "updated_at": self.updated_at,
            "totals": {
                "done": self.done,
                "todo": self.todo,
                "by_type": {name: dict(counts) for name, counts in self.by_type.items()},
            },
            "averages": dict(self.averages),
            "phase_averages": dict(self.phase_averages),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedMetrics":
        """Create from dictionary representation."""
        totals = data["totals"]
        by_type = empty_type_totals()
        for name, counts in totals.get("by_type", {}).items():
            by_type[name] = {"done": counts.get("done", 0), "todo": counts.get("todo", 0)}
        return cls(
            done=totals.get("done", 0),
            todo=totals.get("todo", 0),
            by_type=by_type,
            averages=dict(data.get("averages", {})),
            phase_averages=dict(data.get("phase_averages", {})),
            updated_at=data.get("updated_at", utc_now()),
        )


@dataclass(slots=True)
class MetricsIndex:
    feature_count: int = 0
    completed_count: int = 0
    version: str = METRICS_VERSION
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "version": self.version,
            "last_updated": self.last_updated,
            "feature_count": self.feature_count,
            "completed_count": self.completed_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsIndex":
        """Create from dictionary representation."""
        return cls(
            feature_count=data.get("feature_count", 0),
            completed_count=data.get("completed_count", 0),
            version=data.get("version", METRICS_VERSION),
            last_updated=data.get("last_updated", utc_now()),
        )


@dataclass(slots=True)
class RepairIssue:
    """A single divergence between the ledger and the folder layout."""

    kind: str  # 'ledger_only', 'folder_only', 'removed_in_ledger', 'missing_artifact', ...
    feature_id: Optional[str]
    message: str
    level: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind,
            "feature_id": self.feature_id,
            "level": self.level,
            "message": self.message,
        }


@dataclass(slots=True)
class RepairReport:
    ledger_only: List[str] = field(default_factory=list)
    folder_only: List[str] = field(default_factory=list)
    removed_in_ledger: List[str] = field(default_factory=list)
    issues: List[RepairIssue] = field(default_factory=list)
    checked_at: str = field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "healthy": self.healthy,
            "checked_at": self.checked_at,
            "ledger_only": list(self.ledger_only),
            "folder_only": list(self.folder_only),
            "removed_in_ledger": list(self.removed_in_ledger),
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(slots=True)
class PhaseStep:
    """Describes one stage of the lifecycle for workflow guidance."""

    step_number: int
    phase: str
    description: str
    artifacts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "step": self.step_number,
            "phase": self.phase,
            "description": self.description,
            "artifacts": list(self.artifacts),
        }


# Lifecycle guidance; the artifacts listed are what the gate into the
# *next* phase inspects.
PHASE_STEPS = [
    PhaseStep(
        step_number=1,
        phase="planning",
        description="Capture the work item and, for bugs, investigate the root cause",
        artifacts=["planning/initialization.md", "planning/investigation.md (bugs)"],
    ),
    PhaseStep(
        step_number=2,
        phase="refinement",
        description="Write requirements, the technical spec and a task checklist",
        artifacts=["planning/requirements.md (features, bugs)", "spec.md", "tasks.md"],
    ),
    PhaseStep(
        step_number=3,
        phase="implementation",
        description="Work through tasks.md and record the code review verdict",
        artifacts=["tasks.md (all checked)", "review.md"],
    ),
    PhaseStep(
        step_number=4,
        phase="testing",
        description="Verify the change and record a passing status",
        artifacts=["testing.md (Status: PASS; bugs also note regression testing)"],
    ),
    PhaseStep(
        step_number=5,
        phase="complete",
        description="Feature is done; it may be archived to the done folder",
        artifacts=[],
    ),
]
