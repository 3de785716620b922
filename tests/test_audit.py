# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for structured iteration audit logging."""
import json
import logging

from promptopt.audit import IterationAuditEntry
from promptopt.models import IterationResult


def _audit_records(caplog):
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "promptopt.audit"]


def test_from_result():
    result = IterationResult(
        iteration=4, pairs_found=2, candidates_generated=5,
        champion_objective=0.7, best_candidate_objective=0.76, promoted=True,
        duration_s=2.5, selection_mode="nqd", mutations_used=["m1", "m2"],
    )
    entry = IterationAuditEntry.from_result("opt-1", result)
    assert entry.session_id == "opt-1"
    assert entry.iteration == 4
    assert entry.duration_ms == 2500
    assert entry.mutations_used == ["m1", "m2"]
    assert entry.ok
    assert entry.error is None


def test_emit_json(caplog):
    result = IterationResult(iteration=1, champion_objective=0.123456, promoted=False)
    with caplog.at_level(logging.INFO, logger="promptopt.audit"):
        IterationAuditEntry.from_result("opt-2", result).emit()
    records = _audit_records(caplog)
    assert len(records) == 1
    record = records[0]
    assert record["event"] == "iteration_audit"
    assert record["session_id"] == "opt-2"
    assert record["champion_objective"] == 0.1235
    assert record["ok"] is True
    assert "error" not in record


def test_emit_failed_iteration(caplog):
    result = IterationResult(iteration=2, error="x" * 800)
    with caplog.at_level(logging.INFO, logger="promptopt.audit"):
        IterationAuditEntry.from_result("opt-3", result).emit()
    record = _audit_records(caplog)[0]
    assert record["ok"] is False
    assert len(record["error"]) == 500
