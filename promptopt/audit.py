# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Structured audit logging for optimization iterations."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from promptopt.models import IterationResult

logger = logging.getLogger("promptopt.audit")


@dataclass
class IterationAuditEntry:
    """One optimization iteration audit record.

    Emitted as structured JSON to the ``promptopt.audit`` logger at INFO level.
    """
    timestamp: float = field(default_factory=time.time)
    session_id: str = ""
    iteration: int = 0
    selection_mode: str = "simple"
    pairs_found: int = 0
    candidates_generated: int = 0
    champion_objective: float = 0.0
    best_candidate_objective: float = 0.0
    promoted: bool = False
    duration_ms: int = 0
    mutations_used: List[str] = field(default_factory=list)
    hypermutation_applied: bool = False
    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def from_result(cls, session_id: str, result: IterationResult) -> "IterationAuditEntry":
        return cls(
            session_id=session_id,
            iteration=result.iteration,
            selection_mode=result.selection_mode,
            pairs_found=result.pairs_found,
            candidates_generated=result.candidates_generated,
            champion_objective=result.champion_objective,
            best_candidate_objective=result.best_candidate_objective,
            promoted=result.promoted,
            duration_ms=int(result.duration_s * 1000),
            mutations_used=list(result.mutations_used),
            hypermutation_applied=result.hypermutation_applied,
            ok=result.error is None,
            error=result.error,
        )

    def emit(self) -> None:
        """Emit this entry as a structured JSON log line."""
        record = {
            "event": "iteration_audit",
            "ts": self.timestamp,
            "session_id": self.session_id,
            "iteration": self.iteration,
            "selection_mode": self.selection_mode,
            "pairs_found": self.pairs_found,
            "candidates": self.candidates_generated,
            "champion_objective": round(self.champion_objective, 4),
            "best_candidate_objective": round(self.best_candidate_objective, 4),
            "promoted": self.promoted,
            "duration_ms": self.duration_ms,
            "mutations": self.mutations_used,
            "hypermutation": self.hypermutation_applied,
            "ok": self.ok,
        }
        if self.error:
            record["error"] = self.error[:500]
        logger.info(json.dumps(record, ensure_ascii=False))
