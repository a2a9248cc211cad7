"""Prompt, prompt version and release rows read by the evaluation engine."""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, ForeignKey, Enum
from sqlalchemy.orm import relationship
import enum

from promptgate.models.base import Base, utcnow
from promptgate.services.llm.types import ProviderType


class PromptStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class Prompt(Base):
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    prompt_key = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(PromptStatus), default=PromptStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    versions = relationship("PromptVersion", back_populates="prompt")


class PromptVersion(Base):
    __tablename__ = "prompt_versions"

    id = Column(Integer, primary_key=True, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=False, index=True)
    version_no = Column(Integer, nullable=False, default=1)
    title = Column(String(255), nullable=True)

    system_prompt = Column(Text, nullable=True)
    user_template = Column(Text, nullable=True)
    provider = Column(Enum(ProviderType), nullable=False, default=ProviderType.OPENAI)
    model = Column(String(120), nullable=True)
    model_config = Column(JSON, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    prompt = relationship("Prompt", back_populates="versions")


class PromptRelease(Base):
    """Currently deployed version of a prompt (the comparison baseline)."""
    __tablename__ = "prompt_releases"

    id = Column(Integer, primary_key=True, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=False, unique=True)
    active_version_id = Column(Integer, ForeignKey("prompt_versions.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    active_version = relationship("PromptVersion")
