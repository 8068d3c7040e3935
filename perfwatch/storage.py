"""
Persistence contracts and the stores that ship with perfwatch.

The monitoring core keeps bounded in-memory state. Durable storage is
injected through two small protocols:

- ``SnapshotStore``: append raw snapshots and query them back by time range
- ``AnalysisStateStore``: save and restore analyzer state across restarts

``InMemorySnapshotStore`` is meant for tests and embedding. ``JsonlStore``
writes one JSON-lines file per source plus a single state document.
"""

import json
import logging
import os
import re
import tempfile
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Protocol, runtime_checkable

from .errors import StorageError
from .models import MetricSnapshot

logger = logging.getLogger(__name__)


@runtime_checkable
class SnapshotStore(Protocol):
    """Append/query contract for raw snapshots."""

    def append(self, snapshot: MetricSnapshot) -> None:
        ...

    def query(
        self,
        source: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[MetricSnapshot]:
        ...


@runtime_checkable
class AnalysisStateStore(Protocol):
    """Save/load contract for analyzer state."""

    def save_analysis_state(self, state: Dict[str, Any]) -> None:
        ...

    def load_analysis_state(self) -> Optional[Dict[str, Any]]:
        ...


def _in_range(timestamp: int, start_time: Optional[int], end_time: Optional[int]) -> bool:
    return (start_time is None or timestamp >= start_time) and (
        end_time is None or timestamp <= end_time
    )


class InMemorySnapshotStore:
    """Bounded in-memory implementation of both store protocols."""

    def __init__(self, max_per_source: int = 100_000):
        self.max_per_source = max_per_source
        self._snapshots: Dict[str, Deque[MetricSnapshot]] = defaultdict(
            lambda: deque(maxlen=self.max_per_source)
        )
        self._state: Optional[Dict[str, Any]] = None

    def append(self, snapshot: MetricSnapshot) -> None:
        self._snapshots[snapshot.source].append(snapshot)

    def query(
        self,
        source: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[MetricSnapshot]:
        return [
            s for s in self._snapshots.get(source, ())
            if _in_range(s.timestamp, start_time, end_time)
        ]

    def save_analysis_state(self, state: Dict[str, Any]) -> None:
        self._state = json.loads(json.dumps(state))

    def load_analysis_state(self) -> Optional[Dict[str, Any]]:
        return json.loads(json.dumps(self._state)) if self._state is not None else None


class JsonlStore:
    """
    File-backed store.

    Layout::

        <directory>/snapshots/<source>.jsonl
        <directory>/analysis_state.json
    """

    STATE_FILE = "analysis_state.json"
    _UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.snapshot_dir = self.directory / "snapshots"
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)

    def _source_file(self, source: str) -> Path:
        return self.snapshot_dir / f"{self._UNSAFE_CHARS.sub('_', source)}.jsonl"

    def append(self, snapshot: MetricSnapshot) -> None:
        path = self._source_file(snapshot.source)
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(snapshot.to_dict()) + "\n")
        except OSError as e:
            raise StorageError(f"Failed to append snapshot to {path}: {e}") from e

    def query(
        self,
        source: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[MetricSnapshot]:
        path = self._source_file(source)
        if not path.exists():
            return []

        results: List[MetricSnapshot] = []
        with open(path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    snapshot = MetricSnapshot.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed line {line_number} in {path}: {e}")
                    continue
                if _in_range(snapshot.timestamp, start_time, end_time):
                    results.append(snapshot)
        return results

    def save_analysis_state(self, state: Dict[str, Any]) -> None:
        """Write the state document atomically (temp file + rename)."""
        target = self.directory / self.STATE_FILE
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp_path, target)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"Failed to save analysis state to {target}: {e}") from e

    def load_analysis_state(self) -> Optional[Dict[str, Any]]:
        target = self.directory / self.STATE_FILE
        if not target.exists():
            return None
        try:
            with open(target, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to load analysis state from {target}: {e}") from e
