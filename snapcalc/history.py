from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_HISTORY_SIZE = 3


@dataclass(frozen=True)
class HistoryEntry:
    expression: str
    result: Optional[str]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class History:
    """Most-recently-used list of completed expressions, de-duplicated by text."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        if capacity is None:
            capacity = int(os.getenv("SNAPCALC_HISTORY_SIZE", str(DEFAULT_HISTORY_SIZE)))
        self.capacity = capacity
        if self.capacity < 1:
            raise ValueError(f"history capacity must be positive: {self.capacity}")
        self._entries: List[HistoryEntry] = []

    def add(self, expression: str, result: Optional[str] = None) -> HistoryEntry:
        entry = HistoryEntry(
            expression=expression,
            result=result,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        entries = [item for item in self._entries if item.expression != expression]
        entries.insert(0, entry)
        self._entries = entries[: self.capacity]
        return entry

    def entries(self) -> List[HistoryEntry]:
        return list(self._entries)

    def expressions(self) -> List[str]:
        return [entry.expression for entry in self._entries]

    def get(self, index: int) -> Optional[HistoryEntry]:
        if 0 <= index < len(self._entries):
            return self._entries[index]
        return None

    def clear(self) -> None:
        self._entries = []

    def __len__(self) -> int:
        return len(self._entries)
