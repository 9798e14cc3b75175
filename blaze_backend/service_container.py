from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .actions import ACTION_NAMES, DependencyInstaller
from .chat_stream import ChatStreamService
from .config import Settings
from .consent import ConsentStore
from .db import ServiceRepository
from .engine import ExecutionEngine, ResponseApplier
from .git import GitClient
from .model_client import ModelClient, OpenAIResponsesClient
from .project_store import ProjectStore


@dataclass
class Services:
    settings: Settings
    consent_store: ConsentStore
    repository: ServiceRepository
    git: GitClient
    project_store: ProjectStore
    engine: ExecutionEngine
    applier: ResponseApplier
    model_client: ModelClient
    chat_stream: ChatStreamService


def build_services(settings: Settings, *, model_client: ModelClient | None = None) -> Services:
    data_dir = Path(settings.data_dir).expanduser()
    consent_store = ConsentStore(settings, known_actions=set(ACTION_NAMES))
    repository = ServiceRepository(data_dir / "blaze.db")
    git = GitClient(settings)
    project_store = ProjectStore(repository, git)
    engine = ExecutionEngine(git=git, installer=DependencyInstaller(settings), consent_store=consent_store)
    applier = ResponseApplier(engine, git)
    client = model_client or OpenAIResponsesClient(settings)
    chat_stream = ChatStreamService(
        project_store=project_store,
        model_client=client,
        applier=applier,
        repository=repository,
        default_apply_mode="manual" if settings.apply_mode == "manual" else "auto",
        max_apply_attempts=settings.apply_max_attempts,
    )

    return Services(
        settings=settings,
        consent_store=consent_store,
        repository=repository,
        git=git,
        project_store=project_store,
        engine=engine,
        applier=applier,
        model_client=client,
        chat_stream=chat_stream,
    )
