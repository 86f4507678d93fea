"""Error taxonomy for phaseledger.

Structural failures (missing project, corrupted ledger, unknown feature) are
raised as distinct error kinds so the presentation layer can point the user at
``init`` versus ``repair``. Gate failures are *not* errors: they come back as a
``ValidationResult`` with ``valid == False``.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Feature, ValidationIssue


ERROR_CODES = {
    "NOT_INITIALIZED": "NOT_INITIALIZED",
    "LEDGER_CORRUPTED": "LEDGER_CORRUPTED",
    "FEATURE_NOT_FOUND": "FEATURE_NOT_FOUND",
    "VALIDATION_FAILED": "VALIDATION_FAILED",
    "INVALID_TRANSITION": "INVALID_TRANSITION",
    "FILE_PERMISSION": "FILE_PERMISSION",
    "SCAFFOLD_FAILED": "SCAFFOLD_FAILED",
    "FOLDER_MOVE_FAILED": "FOLDER_MOVE_FAILED",
    "REMOVAL_INCOMPLETE": "REMOVAL_INCOMPLETE",
    "FEATURE_BLOCKED": "FEATURE_BLOCKED",
    "AMBIGUOUS_FEATURE_ID": "AMBIGUOUS_FEATURE_ID",
}


class PhaseLedgerError(Exception):
    """Base error carrying a stable code plus remediation hints."""

    code = "PHASELEDGER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.suggestions = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "error": self.message,
            "details": self.details,
            "suggestions": list(self.suggestions),
        }


class NotInitialized(PhaseLedgerError):
    code = ERROR_CODES["NOT_INITIALIZED"]

    def __init__(self, root: Path | str):
        super().__init__(
            "Project not initialized",
            details=f"No ledger found under {root}",
            suggestions=["Run init_project to initialize this project"],
        )
        self.root = Path(root)


class LedgerCorrupted(PhaseLedgerError):
    code = ERROR_CODES["LEDGER_CORRUPTED"]

    def __init__(self, path: Path | str, details: str):
        super().__init__(
            "Ledger file is corrupted",
            details=details,
            suggestions=["Run check_repair to inspect the project state"],
        )
        self.path = Path(path)


class FeatureNotFound(PhaseLedgerError):
    code = ERROR_CODES["FEATURE_NOT_FOUND"]

    def __init__(self, feature_id: str):
        super().__init__(
            f"Feature '{feature_id}' not found",
            suggestions=["Use list_features to see tracked features"],
        )
        self.feature_id = feature_id


class ValidationFailed(PhaseLedgerError):
    """Input rejected before anything was written."""

    code = ERROR_CODES["VALIDATION_FAILED"]

    def __init__(self, message: str, issues: Optional[List["ValidationIssue"]] = None):
        super().__init__(message)
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["issues"] = [issue.to_dict() for issue in self.issues]
        return data


class InvalidTransition(PhaseLedgerError):
    code = ERROR_CODES["INVALID_TRANSITION"]

    def __init__(self, feature_id: str, from_phase: Optional[str], to_phase: str):
        if from_phase is None:
            message = f"Unknown phase '{to_phase}'"
        else:
            message = f"Cannot transition '{feature_id}' from '{from_phase}' to '{to_phase}'"
        super().__init__(
            message,
            suggestions=["Phases only move forward; use repair to move a feature back"],
        )
        self.feature_id = feature_id
        self.from_phase = from_phase
        self.to_phase = to_phase


class FilePermission(PhaseLedgerError):
    code = ERROR_CODES["FILE_PERMISSION"]

    def __init__(self, path: Path | str, details: str):
        super().__init__(
            f"Permission denied: {path}",
            details=details,
            suggestions=["Check that the project directory is writable"],
        )
        self.path = Path(path)


class ScaffoldFailed(PhaseLedgerError):
    """The ledger entry exists but its folder could not be created."""

    code = ERROR_CODES["SCAFFOLD_FAILED"]

    def __init__(self, feature: "Feature", details: str):
        super().__init__(
            f"Feature '{feature.id}' was added to the ledger but its folder could not be created",
            details=details,
            suggestions=[
                "Fix the filesystem problem and run apply_repair with restore_folders",
                "Or remove the ledger entry with apply_repair drop_orphans",
            ],
        )
        self.feature = feature


class FolderMoveError(PhaseLedgerError):
    code = ERROR_CODES["FOLDER_MOVE_FAILED"]

    def __init__(self, source: Path | str, target: Path | str, details: str):
        super().__init__(f"Cannot move {source} to {target}", details=details)
        self.source = Path(source)
        self.target = Path(target)


class RemovalIncomplete(PhaseLedgerError):
    """Folder was relocated but the ledger still lists the feature."""

    code = ERROR_CODES["REMOVAL_INCOMPLETE"]

    def __init__(self, feature_id: str, removed_path: Path | str, details: str):
        super().__init__(
            f"CRITICAL: feature '{feature_id}' was moved but the ledger update failed",
            details=details,
            suggestions=[
                f"Feature folder is in: {removed_path}",
                "The ledger still shows the feature as active",
                "Run check_repair, then apply_repair with finish_removals",
            ],
        )
        self.feature_id = feature_id
        self.removed_path = Path(removed_path)


class AmbiguousFeatureId(PhaseLedgerError):
    """A partial id matched more than one tracked feature."""

    code = ERROR_CODES["AMBIGUOUS_FEATURE_ID"]

    def __init__(self, fragment: str, candidates: List[str]):
        super().__init__(
            f"'{fragment}' matches {len(candidates)} features",
            details=", ".join(candidates),
            suggestions=["Pass the full feature id or a longer fragment"],
        )
        self.fragment = fragment
        self.candidates = list(candidates)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["candidates"] = list(self.candidates)
        return data


class FeatureBlocked(PhaseLedgerError):
    """Too many failed attempts to enter testing; a human has to step in."""

    code = ERROR_CODES["FEATURE_BLOCKED"]

    def __init__(self, feature_id: str, reason: str):
        super().__init__(
            f"Feature '{feature_id}' is blocked",
            details=reason,
            suggestions=[
                "Fix the reported gate errors, then advance with force=True",
                "Or rewind_feature to restart the phase, which clears the block",
            ],
        )
        self.feature_id = feature_id
        self.reason = reason
