from promptgate.models.base import Base
from promptgate.models.eval_run import (
    EvalMode,
    EvalTriggerType,
    EvalRunStatus,
    EvalCaseStatus,
    EvalHumanReviewVerdict,
    RubricTemplateCode,
    EvalRun,
    EvalCaseResult,
)

# Collaborator rows read by the evaluation engine
from promptgate.models.prompt import Prompt, PromptStatus, PromptVersion, PromptRelease
from promptgate.models.dataset import EvalDataset, EvalTestCase, PromptEvalDefault

from promptgate.models.review import EvalCaseReviewAudit
from promptgate.models.release_criteria import EvalReleaseCriteria, EvalReleaseCriteriaAudit

__all__ = [
    "Base",
    "EvalMode", "EvalTriggerType", "EvalRunStatus", "EvalCaseStatus", "EvalHumanReviewVerdict",
    "RubricTemplateCode", "EvalRun", "EvalCaseResult",
    "Prompt", "PromptStatus", "PromptVersion", "PromptRelease",
    "EvalDataset", "EvalTestCase", "PromptEvalDefault",
    "EvalCaseReviewAudit",
    "EvalReleaseCriteria", "EvalReleaseCriteriaAudit",
]
