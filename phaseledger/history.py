"""Append-only event history for a project.

One JSON object per line, each carrying ``ts`` and ``event``. The ledger is
the source of truth for current state; history records how it got there and
feeds the per-feature timing metrics.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Set

from .errors import FilePermission
from .models import utc_now
from .workspace import Workspace

logger = logging.getLogger("phaseledger.history")


class HistoryLog:
    """JSON-lines history stored at ``.phaseledger/state/history.log``."""

    def __init__(self, workspace: Workspace):
        self.workspace = workspace

    @property
    def path(self):
        return self.workspace.history_path

    def append(self, event: str, **fields: Any) -> Dict[str, Any]:
        """Append one event and return the written record."""
        entry = {"ts": fields.pop("ts", None) or utc_now(), "event": event, **fields}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except PermissionError as e:
            raise FilePermission(self.path, str(e)) from e
        return entry

    def read(self) -> List[Dict[str, Any]]:
        """All events in append order; undecodable or unparsable lines are skipped."""
        if not self.path.exists():
            return []
        events: List[Dict[str, Any]] = []
        for number, raw in enumerate(self.path.read_bytes().splitlines(), start=1):
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(f"Skipping undecodable history line {number} in {self.path}")
                continue
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping unparsable history line {number} in {self.path}")
                continue
            if isinstance(event, dict):
                events.append(event)
            else:
                logger.warning(f"Skipping non-object history line {number} in {self.path}")
        return events

    def for_feature(self, feature_id: str) -> List[Dict[str, Any]]:
        return [event for event in self.read() if event.get("feature_id") == feature_id]

    def known_feature_ids(self) -> Set[str]:
        """Every feature id that was ever created in this project."""
        return {
            event["feature_id"]
            for event in self.read()
            if event.get("event") == "feature_created" and event.get("feature_id")
        }
