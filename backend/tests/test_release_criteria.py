from promptgate.models.release_criteria import (
    DEFAULT_MAX_ERROR_RATE,
    DEFAULT_MIN_PASS_RATE,
    EvalReleaseCriteria,
    EvalReleaseCriteriaAudit,
)
from promptgate.services.eval import release_criteria


def test_missing_criteria_resolve_to_unsaved_defaults(db):
    resolved = release_criteria.get(db, 5)
    assert resolved["workspaceId"] == 5
    assert resolved["minPassRate"] == DEFAULT_MIN_PASS_RATE
    assert db.query(EvalReleaseCriteria).count() == 0


def test_upsert_creates_then_updates_with_audit_each_time(db):
    first = release_criteria.upsert(db, 5, 11, {"minPassRate": 80.0, "maxErrorRate": None})
    assert first["minPassRate"] == 80.0
    assert first["maxErrorRate"] == DEFAULT_MAX_ERROR_RATE
    assert first["updatedBy"] == 11

    second = release_criteria.upsert(db, 5, 12, {"minPassRate": 70.0, "minAvgOverallScore": 60.0})
    assert second["minPassRate"] == 70.0

    row = db.query(EvalReleaseCriteria).one()
    assert row.created_by == 11
    assert row.updated_by == 12
    assert db.query(EvalReleaseCriteriaAudit).count() == 2

    history = release_criteria.list_history(db, 5)
    assert [h["minPassRate"] for h in history] == [70.0, 80.0]
    assert history[0]["changedBy"] == 12


def test_nan_threshold_falls_back_to_default(db):
    result = release_criteria.upsert(db, 6, None, {"minPassRate": float("nan")})
    assert result["minPassRate"] == DEFAULT_MIN_PASS_RATE


def test_history_is_workspace_scoped(db):
    release_criteria.upsert(db, 7, 1, {"minPassRate": 50.0})
    assert release_criteria.list_history(db, 8) == []
