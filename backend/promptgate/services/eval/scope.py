"""Workspace / prompt ownership lookups shared by the eval services."""
from __future__ import annotations

from sqlalchemy.orm import Session

from promptgate.models.dataset import EvalDataset
from promptgate.models.eval_run import EvalCaseResult, EvalRun
from promptgate.models.prompt import Prompt, PromptVersion
from promptgate.services.eval.errors import not_found


def require_prompt(db: Session, workspace_id: int, prompt_id: int) -> Prompt:
    prompt = (
        db.query(Prompt)
        .filter(Prompt.id == prompt_id, Prompt.workspace_id == workspace_id)
        .first()
    )
    if prompt is None:
        raise not_found("prompt not found")
    return prompt


def require_version(db: Session, prompt: Prompt, version_id: int) -> PromptVersion:
    version = (
        db.query(PromptVersion)
        .filter(PromptVersion.id == version_id, PromptVersion.prompt_id == prompt.id)
        .first()
    )
    if version is None:
        raise not_found("prompt version not found")
    return version


def require_dataset(db: Session, workspace_id: int, dataset_id: int) -> EvalDataset:
    dataset = (
        db.query(EvalDataset)
        .filter(EvalDataset.id == dataset_id, EvalDataset.workspace_id == workspace_id)
        .first()
    )
    if dataset is None:
        raise not_found("dataset not found")
    return dataset


def require_run(db: Session, prompt: Prompt, run_id: int) -> EvalRun:
    run = (
        db.query(EvalRun)
        .filter(EvalRun.id == run_id, EvalRun.prompt_id == prompt.id)
        .first()
    )
    if run is None:
        raise not_found("eval run not found")
    return run


def require_case_result(db: Session, run: EvalRun, case_result_id: int) -> EvalCaseResult:
    case = (
        db.query(EvalCaseResult)
        .filter(EvalCaseResult.id == case_result_id, EvalCaseResult.eval_run_id == run.id)
        .first()
    )
    if case is None:
        raise not_found("eval case result not found")
    return case
