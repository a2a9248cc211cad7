"""Evaluation datasets, test cases and per-prompt evaluation defaults."""
from sqlalchemy import Boolean, Column, Integer, String, DateTime, JSON, Text, ForeignKey, Enum
from sqlalchemy.orm import relationship

from promptgate.models.base import Base, utcnow
from promptgate.models.eval_run import EvalMode, RubricTemplateCode


class EvalDataset(Base):
    __tablename__ = "eval_datasets"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    test_cases = relationship("EvalTestCase", back_populates="dataset", order_by="EvalTestCase.case_order")


class EvalTestCase(Base):
    __tablename__ = "eval_test_cases"

    id = Column(Integer, primary_key=True, index=True)
    dataset_id = Column(Integer, ForeignKey("eval_datasets.id"), nullable=False, index=True)
    case_order = Column(Integer, nullable=False, default=0)

    input_text = Column(Text, nullable=False)
    context_json = Column(JSON, nullable=True)
    expected_json = Column(JSON, nullable=True)
    constraints_json = Column(JSON, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)

    dataset = relationship("EvalDataset", back_populates="test_cases")


class PromptEvalDefault(Base):
    """Auto-evaluation settings applied when a new prompt version is created."""
    __tablename__ = "prompt_eval_defaults"

    id = Column(Integer, primary_key=True, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=False, unique=True)
    dataset_id = Column(Integer, ForeignKey("eval_datasets.id"), nullable=True)
    rubric_template_code = Column(Enum(RubricTemplateCode), nullable=False, default=RubricTemplateCode.GENERAL_TEXT)
    rubric_overrides_json = Column(JSON, nullable=True)
    default_mode = Column(Enum(EvalMode), nullable=False, default=EvalMode.CANDIDATE_ONLY)
    auto_eval_enabled = Column(Boolean, nullable=False, default=False)
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    dataset = relationship("EvalDataset")
