"""JSONL audit trail for review and materialization actions."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List


class CurationAuditTrail:
    """Append-only JSONL audit trail for curation actions."""

    def __init__(self, path: Path | str, *, enabled: bool = True) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self._lock = threading.Lock()
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: str, payload: Dict[str, Any]) -> None:
        """Append an audit entry to disk."""
        if not self.enabled:
            return

        entry = {
            "event": event,
            "payload": payload,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        line = json.dumps(entry, sort_keys=True, default=str) + "\n"
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)

    def read(self) -> List[Dict[str, Any]]:
        """Load every recorded entry (oldest first)."""
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
