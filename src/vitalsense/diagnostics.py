"""Bounded in-memory trace of processing steps for debugging.

The export format is not stable; it is meant for humans and ad hoc tooling.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraceEvent:
    timestamp: float
    category: str  # rppg | voice | session
    step: str
    message: str
    payload: Dict[str, float] = field(default_factory=dict)


class DiagnosticTrace:
    def __init__(self, max_events: int = 100) -> None:
        self._events: Deque[TraceEvent] = deque(maxlen=max(1, int(max_events)))

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        category: str,
        step: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[float] = None,
    ) -> TraceEvent:
        clean = {k: float(v) for k, v in (payload or {}).items() if v is not None}
        ev = TraceEvent(
            timestamp=time.time() if timestamp is None else float(timestamp),
            category=category,
            step=step,
            message=message,
            payload=clean,
        )
        self._events.append(ev)
        logger.debug("[%s/%s] %s %s", category, step, message, clean)
        return ev

    def events(self) -> List[TraceEvent]:
        return list(self._events)

    def export(self) -> List[Dict[str, Any]]:
        return [asdict(e) for e in self._events]

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.export(), indent=indent)

    def clear(self) -> None:
        self._events.clear()
