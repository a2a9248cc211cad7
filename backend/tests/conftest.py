from dataclasses import dataclass
from typing import List, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from promptgate.config import Settings
from promptgate.models import Base
from promptgate.models.dataset import EvalDataset, EvalTestCase
from promptgate.models.eval_run import EvalCaseResult, EvalCaseStatus, EvalRun, EvalRunStatus
from promptgate.models.prompt import Prompt, PromptRelease, PromptVersion
from promptgate.services.llm.types import ProviderType

CANDIDATE_MODEL = "claude-3-5-haiku"
BASELINE_MODEL = "gemini-2.0-flash"
JUDGE_MODEL = "gpt-4.1-mini"


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own; emit it ourselves so SAVEPOINT works.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        eval_judge_provider="OPENAI",
        eval_judge_model=JUDGE_MODEL,
        eval_judge_rejudge_on_fail=True,
        eval_judge_max_attempts=2,
        eval_run_timeout_minutes=30,
        eval_run_overall_review_enabled=False,
        eval_runner_retry_backoff_seconds=0,
    )


@dataclass
class Seeded:
    prompt: Prompt
    candidate: PromptVersion
    baseline: Optional[PromptVersion]
    dataset: EvalDataset
    test_cases: List[EvalTestCase]


@pytest.fixture
def seed_prompt(db):
    """Factory for a prompt with a candidate version and a dataset of test cases."""

    def _seed(
        *,
        workspace_id: int = 1,
        inputs=("What is 2+2?", "Name a primary colour."),
        constraints=None,
        with_release: bool = False,
        disabled_inputs=(),
    ) -> Seeded:
        prompt = Prompt(workspace_id=workspace_id, prompt_key="support-answer")
        db.add(prompt)
        db.flush()

        baseline = None
        if with_release:
            baseline = PromptVersion(
                prompt_id=prompt.id,
                version_no=1,
                provider=ProviderType.GEMINI,
                model=BASELINE_MODEL,
                user_template="{{question}}",
            )
            db.add(baseline)
            db.flush()
            db.add(PromptRelease(prompt_id=prompt.id, active_version_id=baseline.id))

        candidate = PromptVersion(
            prompt_id=prompt.id,
            version_no=2,
            provider=ProviderType.ANTHROPIC,
            model=CANDIDATE_MODEL,
            user_template="{{question}}",
            model_config={"temperature": 0.2, "maxOutputTokens": 400},
            created_by=7,
        )
        dataset = EvalDataset(workspace_id=workspace_id, name="smoke")
        db.add_all([candidate, dataset])
        db.flush()

        test_cases = []
        for order, text in enumerate(inputs, start=1):
            case = EvalTestCase(
                dataset_id=dataset.id,
                case_order=order,
                input_text=text,
                constraints_json=constraints,
                enabled=True,
            )
            db.add(case)
            test_cases.append(case)
        for offset, text in enumerate(disabled_inputs, start=len(inputs) + 1):
            db.add(EvalTestCase(dataset_id=dataset.id, case_order=offset, input_text=text, enabled=False))
        db.commit()
        return Seeded(prompt=prompt, candidate=candidate, baseline=baseline, dataset=dataset, test_cases=test_cases)

    return _seed


@pytest.fixture
def seed_run(db):
    """Factory for a run on a seeded prompt whose case rows are written directly."""

    def _seed(seeded: Seeded, cases, *, version=None, status=EvalRunStatus.FINISHED) -> EvalRun:
        version = version or seeded.candidate
        run = EvalRun(
            workspace_id=seeded.prompt.workspace_id,
            prompt_id=seeded.prompt.id,
            prompt_version_id=version.id,
            dataset_id=seeded.dataset.id,
            status=status,
            total_cases=len(cases),
        )
        db.add(run)
        db.flush()
        for index, values in enumerate(cases):
            values = dict(values)
            values.setdefault("status", EvalCaseStatus.OK)
            db.add(
                EvalCaseResult(
                    eval_run_id=run.id,
                    test_case_id=seeded.test_cases[index % len(seeded.test_cases)].id,
                    **values,
                )
            )
        db.commit()
        return run

    return _seed
