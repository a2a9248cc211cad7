from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from promptgate.config import get_settings
from promptgate.logging_config import configure_logging
from promptgate.models.base import init_db
from promptgate.api import evals


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: logging, then database tables
    configure_logging(get_settings().debug)
    await init_db()
    yield


app = FastAPI(
    title="promptgate API",
    description="Prompt evaluation runs, LLM judging and release gating",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(
    evals.router,
    prefix="/workspaces/{workspace_id}/prompts/{prompt_id}/eval",
    tags=["eval"],
)
app.include_router(
    evals.criteria_router,
    prefix="/workspaces/{workspace_id}/eval",
    tags=["eval-release-criteria"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
