"""Ledger store: the single source of truth for tracked features.

Every mutation loads the full ledger, changes it in memory and rewrites the
whole file atomically. A crash mid-write leaves the previous ledger intact;
it never leaves a half-written file behind. One writer per project root is
assumed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import List, Optional

from .errors import AmbiguousFeatureId, FeatureNotFound, LedgerCorrupted, NotInitialized, ValidationFailed
from .history import HistoryLog
from .models import FEATURE_TYPES, INITIAL_PHASE, PHASES, Feature, Ledger, ValidationIssue, utc_now
from .phaseledger_logging import EventHooks, event_hooks
from .workspace import FOLDER_AREAS, Workspace

logger = logging.getLogger("phaseledger.ledger")

_SEQUENCE_PATTERN = re.compile(r"^(?:%s)-(\d+)" % "|".join(FEATURE_TYPES))


def slugify(value: str, max_length: int = 30) -> str:
    """Lowercase, dash-separated slug capped at ``max_length`` characters."""
    slug = re.sub(r"[^a-z0-9\s-]", "", value.lower())
    slug = re.sub(r"[\s-]+", "-", slug).strip("-")
    return slug[:max_length].rstrip("-")


def generate_feature_id(feature_type: str, sequence: int, title: str) -> str:
    """Build an id of the form ``<type>-<NNN>[-<slug>]``."""
    slug = slugify(title)
    base = f"{feature_type}-{sequence:03d}"
    return f"{base}-{slug}" if slug else base


class LedgerStore:
    """Reads and writes ``.phaseledger/state/ledger.json``."""

    def __init__(
        self,
        workspace: Workspace,
        history: Optional[HistoryLog] = None,
        hooks: Optional[EventHooks] = None,
    ):
        self.workspace = workspace
        self.history = history or HistoryLog(workspace)
        self.hooks = hooks or event_hooks

    @property
    def path(self):
        return self.workspace.ledger_path

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def initialize(self, *, force: bool = False) -> Ledger:
        """Write an empty ledger unless one already exists."""
        if self.path.exists() and not force:
            return self.load()
        ledger = Ledger()
        self.save(ledger)
        logger.info(f"Initialized empty ledger at {self.path}")
        return ledger

    def load(self) -> Ledger:
        """Load the ledger.

        Raises NotInitialized when there is no ledger file and LedgerCorrupted
        when it exists but cannot be parsed or fails validation.
        """
        if not self.path.exists():
            raise NotInitialized(self.workspace.root)

        try:
            raw = self.workspace.read_json(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise LedgerCorrupted(self.path, f"Failed to parse ledger: {e}") from e

        if not isinstance(raw, dict):
            raise LedgerCorrupted(self.path, "Ledger root must be an object")
        try:
            ledger = Ledger.from_dict(raw)
            issues = ledger.validate()
        except (KeyError, TypeError, AttributeError) as e:
            raise LedgerCorrupted(self.path, f"Malformed ledger record: {e!r}") from e

        if issues:
            raise LedgerCorrupted(self.path, "; ".join(issues))
        return ledger

    def save(self, ledger: Ledger) -> None:
        """Atomically rewrite the full ledger."""
        ledger.updated_at = utc_now()
        self.workspace.write_json(self.path, ledger.to_dict())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, feature_id: str) -> Optional[Feature]:
        """Return the feature with this exact id, or None."""
        return self.load().get(feature_id)

    def get(self, feature_id: str) -> Feature:
        """Like :meth:`find` but raises FeatureNotFound."""
        feature = self.find(feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)
        return feature

    def find_partial(self, fragment: str) -> Optional[Feature]:
        """Exact id match first, then a unique substring match.

        Returns None when nothing matches; raises AmbiguousFeatureId when the
        fragment matches several ids.
        """
        ledger = self.load()
        exact = ledger.get(fragment)
        if exact:
            return exact
        matches = [feature for feature in ledger.features if fragment in feature.id]
        if len(matches) > 1:
            raise AmbiguousFeatureId(fragment, [feature.id for feature in matches])
        return matches[0] if matches else None

    def resolve(self, fragment: str) -> Feature:
        """Like :meth:`find_partial` but raises FeatureNotFound."""
        feature = self.find_partial(fragment)
        if feature is None:
            raise FeatureNotFound(fragment)
        return feature

    def list_features(
        self,
        *,
        include_complete: bool = True,
        feature_type: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> List[Feature]:
        features = self.load().features
        if not include_complete:
            features = [f for f in features if not f.is_complete]
        if feature_type:
            features = [f for f in features if f.type == feature_type]
        if phase:
            features = [f for f in features if f.phase == phase]
        return features

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, title: str, feature_type: str = "feature", external_id: Optional[str] = None) -> Feature:
        """Create a feature in the initial phase and persist it."""
        if not title or not title.strip():
            raise ValidationFailed(
                "Title cannot be empty",
                [ValidationIssue(level="error", message="Title cannot be empty")],
            )
        if feature_type not in FEATURE_TYPES:
            raise ValidationFailed(
                f"Invalid feature type: {feature_type}",
                [ValidationIssue(
                    level="error",
                    message=f"Invalid feature type: {feature_type}",
                    expected=", ".join(FEATURE_TYPES),
                    actual=feature_type,
                )],
            )

        ledger = self.load()
        feature_id = generate_feature_id(feature_type, self._next_sequence(ledger), title)

        now = utc_now()
        feature = Feature(
            id=feature_id,
            title=title.strip(),
            type=feature_type,
            phase=INITIAL_PHASE,
            external_id=external_id,
            created_at=now,
            updated_at=now,
        )
        ledger.features.append(feature)
        self.save(ledger)

        self.history.append(
            "feature_created",
            ts=now,
            feature_id=feature.id,
            title=feature.title,
            type=feature.type,
        )
        logger.info(f"Added {feature.type} '{feature.id}' to the ledger")
        self.hooks.emit("feature_created", feature_id=feature.id, type=feature.type)
        return feature

    def remove(self, feature_id: str) -> Feature:
        """Delete the entry from the ledger; the folder is the caller's job."""
        ledger = self.load()
        feature = ledger.get(feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)

        ledger.features = [f for f in ledger.features if f.id != feature_id]
        self.save(ledger)

        self.history.append("feature_removed", feature_id=feature_id, phase=feature.phase)
        logger.info(f"Removed '{feature_id}' from the ledger")
        self.hooks.emit("feature_removed", feature_id=feature_id)
        return feature

    def update_phase(self, feature_id: str, new_phase: str) -> Feature:
        """Set a feature's phase and clear its retry state.

        Only the transition controller and the repair rewind call this.
        """
        if new_phase not in PHASES:
            raise ValueError(f"Invalid phase: {new_phase}")
        ledger = self.load()
        feature = ledger.get(feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)

        feature.phase = new_phase
        feature.retry_count = 0
        feature.blocked_reason = None
        feature.updated_at = utc_now()
        self.save(ledger)
        return feature

    def set_retry_state(self, feature_id: str, retry_count: int, blocked_reason: Optional[str] = None) -> Feature:
        """Record failed attempts to enter testing; the phase is left alone."""
        ledger = self.load()
        feature = ledger.get(feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)

        feature.retry_count = retry_count
        feature.blocked_reason = blocked_reason
        feature.updated_at = utc_now()
        self.save(ledger)
        return feature

    def update_metadata(
        self,
        feature_id: str,
        *,
        title: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Feature:
        """Edit title or external id; type and phase are not editable here."""
        if title is not None and not title.strip():
            raise ValidationFailed(
                "Title cannot be empty",
                [ValidationIssue(level="error", message="Title cannot be empty")],
            )
        ledger = self.load()
        feature = ledger.get(feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)

        if title is not None:
            feature.title = title.strip()
        if external_id is not None:
            feature.external_id = external_id
        feature.updated_at = utc_now()
        self.save(ledger)
        return feature

    def restore(self, feature: Feature) -> Feature:
        """Re-register a record for a folder that lost its ledger entry."""
        ledger = self.load()
        if ledger.get(feature.id) is not None:
            raise ValidationFailed(f"Feature '{feature.id}' is already in the ledger")
        issues = feature.validate()
        if issues:
            raise ValidationFailed("; ".join(issues))

        ledger.features.append(feature)
        self.save(ledger)
        self.history.append("feature_restored", feature_id=feature.id, phase=feature.phase)
        logger.warning(f"Restored ledger entry for '{feature.id}'")
        return feature

    # ------------------------------------------------------------------
    # Id allocation
    # ------------------------------------------------------------------

    def _next_sequence(self, ledger: Ledger) -> int:
        """Highest sequence ever used in this project, plus one.

        Removed and archived folders and the creation history all count, so a
        withdrawn feature's id is never handed out again.
        """
        seen = set(ledger.ids())
        for area in FOLDER_AREAS:
            seen.update(self.workspace.list_folder_ids(area))
        seen.update(self.history.known_feature_ids())

        highest = 0
        for feature_id in seen:
            match = _SEQUENCE_PATTERN.match(feature_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1
