"""Phase gates.

Each gate is a plain function ``gate(feature_dir) -> ValidationResult`` that
only reads files under the feature folder. Gates are looked up by
``(feature type, target phase)``; a pair with no entry in ``GATES`` has no
gate and the transition is allowed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .models import ValidationIssue, ValidationResult

logger = logging.getLogger("phaseledger.validation")

Gate = Callable[[Path], ValidationResult]

# Accepted spellings of a passing test status (matched on lowercased text)
PASSING_MARKERS = ("status: pass", "**status:** pass")

_TASK_PATTERN = re.compile(r"^[-*]\s+\[[ xX]\]")
_COMPLETED_TASK_PATTERN = re.compile(r"^[-*]\s+\[[xX]\]")
_REGRESSION_PATTERN = re.compile(
    r"regression[\s-]*(?:test|check|suite|verif|run)\w*"
    r"|regressions?\s*:\s*(?:pass|ok|verified|checked|tested)"
    r"|(?:verified|confirmed|checked|tested)\b[^.\n]{0,40}\bregressions?\b"
    r"|no\s+regressions?\s+(?:found|observed|detected|introduced)",
    re.IGNORECASE,
)


# ----------------------------------------------------------------------
# Artifact inspection helpers
# ----------------------------------------------------------------------


def read_artifact(path: Path) -> Optional[str]:
    """Contents of ``path``, or None when it is absent or unreadable."""
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def exists_with_content(path: Path) -> bool:
    """True when the file exists and is non-empty after trimming whitespace."""
    content = read_artifact(path)
    return bool(content and content.strip())


@dataclass(slots=True)
class TaskProgress:
    total: int = 0
    completed: int = 0

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.completed == self.total


def read_task_progress(tasks_path: Path) -> TaskProgress:
    """Count ``- [ ]`` / ``- [x]`` checklist lines in tasks.md."""
    progress = TaskProgress()
    content = read_artifact(tasks_path)
    if content is None:
        return progress
    for line in content.splitlines():
        stripped = line.strip()
        if _TASK_PATTERN.match(stripped):
            progress.total += 1
            if _COMPLETED_TASK_PATTERN.match(stripped):
                progress.completed += 1
    return progress


def read_review_verdict(review_path: Path) -> str:
    """'pass', 'fail' or 'pending', read from the ``## Verdict`` section."""
    content = read_artifact(review_path)
    if content is None or "## Verdict" not in content:
        return "pending"
    section = content.split("## Verdict", 1)[1]
    if re.search(r"\bPASS\b", section, re.IGNORECASE):
        return "pass"
    if re.search(r"\bFAIL\b", section, re.IGNORECASE):
        return "fail"
    return "pending"


def has_passing_status(content: str) -> bool:
    lowered = content.lower()
    return any(marker in lowered for marker in PASSING_MARKERS)


def mentions_regression_check(content: str) -> bool:
    return _REGRESSION_PATTERN.search(content) is not None


def _missing(name: str, file: str) -> ValidationIssue:
    return ValidationIssue(level="error", message=f"{name} is missing or empty", file=file)


# ----------------------------------------------------------------------
# Gates into refinement
# ----------------------------------------------------------------------


def validate_initialization(feature_dir: Path) -> ValidationResult:
    """planning/initialization.md must exist; a title heading is expected."""
    issues: List[ValidationIssue] = []
    init_path = feature_dir / "planning" / "initialization.md"

    if not exists_with_content(init_path):
        issues.append(_missing("initialization.md", "planning/initialization.md"))
    elif "# " not in (read_artifact(init_path) or ""):
        issues.append(ValidationIssue(
            level="warning",
            message="initialization.md should have a title heading",
            file="planning/initialization.md",
        ))

    return ValidationResult(issues)


def validate_bug_investigation(feature_dir: Path) -> ValidationResult:
    """Bugs need planning/investigation.md, ideally with a root cause."""
    issues: List[ValidationIssue] = []
    investigation_path = feature_dir / "planning" / "investigation.md"

    if not exists_with_content(investigation_path):
        issues.append(_missing("investigation.md", "planning/investigation.md"))
    elif "root cause" not in (read_artifact(investigation_path) or "").lower():
        issues.append(ValidationIssue(
            level="warning",
            message="investigation.md should contain root cause analysis",
            file="planning/investigation.md",
        ))

    return ValidationResult(issues)


# ----------------------------------------------------------------------
# Gates into implementation
# ----------------------------------------------------------------------


def _spec_and_tasks_issues(feature_dir: Path) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not exists_with_content(feature_dir / "spec.md"):
        issues.append(_missing("spec.md", "spec.md"))

    tasks_path = feature_dir / "tasks.md"
    if not exists_with_content(tasks_path):
        issues.append(_missing("tasks.md", "tasks.md"))
    elif read_task_progress(tasks_path).total == 0:
        issues.append(ValidationIssue(
            level="warning",
            message="tasks.md should contain task checkboxes (- [ ] format)",
            file="tasks.md",
        ))
    return issues


def validate_refinement(feature_dir: Path) -> ValidationResult:
    """Requirements, technical spec and task list must all be written."""
    issues: List[ValidationIssue] = []
    if not exists_with_content(feature_dir / "planning" / "requirements.md"):
        issues.append(_missing("requirements.md", "planning/requirements.md"))
    issues.extend(_spec_and_tasks_issues(feature_dir))
    return ValidationResult(issues)


def validate_task_refinement(feature_dir: Path) -> ValidationResult:
    """Tasks skip product requirements: spec.md and tasks.md are enough."""
    return ValidationResult(_spec_and_tasks_issues(feature_dir))


# ----------------------------------------------------------------------
# Gate into testing
# ----------------------------------------------------------------------


def validate_implementation(feature_dir: Path) -> ValidationResult:
    """Every task is checked off and the review did not fail."""
    issues: List[ValidationIssue] = []
    progress = read_task_progress(feature_dir / "tasks.md")

    if progress.total == 0:
        issues.append(ValidationIssue(level="error", message="No tasks found in tasks.md", file="tasks.md"))
    elif not progress.is_complete:
        issues.append(ValidationIssue(
            level="error",
            message=f"Not all tasks complete: {progress.completed}/{progress.total} done",
            file="tasks.md",
            expected=f"{progress.total} tasks complete",
            actual=f"{progress.completed} tasks complete",
        ))

    verdict = read_review_verdict(feature_dir / "review.md")
    if verdict == "fail":
        issues.append(ValidationIssue(
            level="error",
            message="Review failed: fix issues before proceeding to testing",
            file="review.md",
            expected="PASS",
            actual="FAIL",
        ))
    elif verdict == "pending":
        issues.append(ValidationIssue(
            level="warning",
            message="review.md has no verdict yet",
            file="review.md",
        ))

    return ValidationResult(issues)


# ----------------------------------------------------------------------
# Gates into complete
# ----------------------------------------------------------------------


def _testing_issues(feature_dir: Path, *, require_regression: bool) -> List[ValidationIssue]:
    testing_path = feature_dir / "testing.md"
    content = read_artifact(testing_path)

    # whitespace-only is the same failure as a missing file
    if content is None or not content.strip():
        return [_missing("testing.md", "testing.md")]

    issues: List[ValidationIssue] = []
    if require_regression and not mentions_regression_check(content):
        issues.append(ValidationIssue(
            level="warning",
            message="Bug testing should include regression test validation",
            file="testing.md",
        ))
    if not has_passing_status(content):
        issues.append(ValidationIssue(
            level="error",
            message="No passing test found in testing.md",
            file="testing.md",
            expected="Status: pass",
            actual="No passing status found",
        ))
    return issues


def validate_testing(feature_dir: Path) -> ValidationResult:
    return ValidationResult(_testing_issues(feature_dir, require_regression=False))


def validate_bug_testing(feature_dir: Path) -> ValidationResult:
    """Passing status required; missing regression evidence only warns."""
    return ValidationResult(_testing_issues(feature_dir, require_regression=True))


def validate_task_testing(feature_dir: Path) -> ValidationResult:
    """Same bar as features: a passing status, no regression advice."""
    return ValidationResult(_testing_issues(feature_dir, require_regression=False))


GATES: Dict[Tuple[str, str], Gate] = {
    ("feature", "refinement"): validate_initialization,
    ("bug", "refinement"): validate_bug_investigation,
    ("feature", "implementation"): validate_refinement,
    ("bug", "implementation"): validate_refinement,
    ("task", "implementation"): validate_task_refinement,
    ("feature", "testing"): validate_implementation,
    ("bug", "testing"): validate_implementation,
    ("task", "testing"): validate_implementation,
    ("feature", "complete"): validate_testing,
    ("bug", "complete"): validate_bug_testing,
    ("task", "complete"): validate_task_testing,
}


def resolve_validator(feature_type: str, target_phase: str) -> Optional[Gate]:
    """The gate for this pair, or None when the phase is ungated."""
    return GATES.get((feature_type, target_phase))
