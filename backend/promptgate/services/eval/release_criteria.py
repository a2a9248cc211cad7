"""Workspace release-criteria lookup, upsert and history."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from promptgate.models.release_criteria import EvalReleaseCriteria, EvalReleaseCriteriaAudit

HISTORY_LIMIT = 20


def resolve_or_default(db: Session, workspace_id: int) -> EvalReleaseCriteria:
    """Stored criteria, or an unsaved default row for the workspace."""
    criteria = db.query(EvalReleaseCriteria).filter(EvalReleaseCriteria.workspace_id == workspace_id).first()
    return criteria or EvalReleaseCriteria.create_default(workspace_id)


def get(db: Session, workspace_id: int) -> Dict[str, Any]:
    return resolve_or_default(db, workspace_id).as_dict()


def upsert(
    db: Session,
    workspace_id: int,
    user_id: Optional[int],
    values: Dict[str, Any],
) -> Dict[str, Any]:
    criteria = db.query(EvalReleaseCriteria).filter(EvalReleaseCriteria.workspace_id == workspace_id).first()
    if criteria is None:
        criteria = EvalReleaseCriteria.create_default(workspace_id)
        db.add(criteria)

    criteria.update(
        values.get("minPassRate"),
        values.get("minAvgOverallScore"),
        values.get("maxErrorRate"),
        values.get("minImprovementNoticeDelta"),
        user_id,
    )
    db.flush()
    db.add(EvalReleaseCriteriaAudit.snapshot(criteria, user_id))
    db.commit()
    return criteria.as_dict()


def list_history(db: Session, workspace_id: int) -> List[Dict[str, Any]]:
    audits = (
        db.query(EvalReleaseCriteriaAudit)
        .filter(EvalReleaseCriteriaAudit.workspace_id == workspace_id)
        .order_by(EvalReleaseCriteriaAudit.changed_at.desc(), EvalReleaseCriteriaAudit.id.desc())
        .limit(HISTORY_LIMIT)
        .all()
    )
    return [audit.as_dict() for audit in audits]
