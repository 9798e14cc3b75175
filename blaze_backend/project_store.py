from __future__ import annotations

import logging
from pathlib import Path

from .db import ServiceRepository
from .git import GitClient
from .types import ChatBinding, ProjectContext, RequestScope
from .utils import make_id, utc_now_iso

logger = logging.getLogger(__name__)


class ScopeError(Exception):
    def __init__(self, message: str, *, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code


class ProjectStore:
    def __init__(self, repository: ServiceRepository, git: GitClient):
        self.repository = repository
        self.git = git
        self._projects: dict[str, ProjectContext] = {}
        self._by_root: dict[str, str] = {}
        self._load_saved_projects()

    def _load_saved_projects(self) -> None:
        for row in self.repository.list_projects():
            root = Path(row["root_path"])
            if not root.is_dir():
                logger.warning("Skipping saved project with missing root project_id=%s root=%s", row["id"], root)
                continue
            self._register(ProjectContext(project_id=row["id"], name=row["name"], root_path=root, created_at=row["created_at"]))

    def _register(self, context: ProjectContext) -> None:
        self._projects[context.project_id] = context
        self._by_root[str(context.root_path)] = context.project_id

    def list_projects(self) -> list[ProjectContext]:
        return list(self._projects.values())

    def get(self, project_id: str) -> ProjectContext | None:
        return self._projects.get(project_id)

    def get_by_root(self, root_path: Path) -> ProjectContext | None:
        project_id = self._by_root.get(str(root_path.resolve()))
        if not project_id:
            return None
        return self._projects.get(project_id)

    def open_or_create(self, *, name: str, root_path: str) -> ProjectContext:
        root = Path(root_path).expanduser().resolve()
        root.mkdir(parents=True, exist_ok=True)

        existing = self.get_by_root(root)
        if existing is not None:
            return existing

        self.git.init(root)
        context = ProjectContext(project_id=make_id("proj"), name=name, root_path=root, created_at=utc_now_iso())
        self.repository.upsert_project(
            project_id=context.project_id,
            name=context.name,
            root_path=str(root),
            created_at=context.created_at,
        )
        self._register(context)
        logger.info("Project registered project_id=%s root=%s", context.project_id, root)
        return context

    def create_chat(self, *, project_id: str, org_id: str, workspace_id: str, title: str) -> ChatBinding:
        if project_id not in self._projects:
            raise ValueError("Unknown project")
        row = self.repository.create_chat(project_id=project_id, org_id=org_id, workspace_id=workspace_id, title=title)
        return ChatBinding(
            chat_id=row["id"],
            project_id=project_id,
            org_id=org_id,
            workspace_id=workspace_id,
            title=title,
            created_at=row["created_at"],
        )

    def resolve_chat(self, chat_id: int, scope: RequestScope) -> tuple[ProjectContext, ChatBinding]:
        """Return the project and chat binding, or raise ScopeError when the chat is outside ``scope``."""
        row = self.repository.get_chat(chat_id)
        if row is None:
            raise ScopeError("Chat not found", status_code=404)
        if row["org_id"] != scope.org_id or row["workspace_id"] != scope.workspace_id:
            raise ScopeError("Chat does not belong to this workspace")

        context = self._projects.get(row["project_id"])
        if context is None:
            raise ScopeError("Project not loaded", status_code=404)
        binding = ChatBinding(
            chat_id=int(row["id"]),
            project_id=row["project_id"],
            org_id=row["org_id"],
            workspace_id=row["workspace_id"],
            title=row["title"],
            created_at=row["created_at"],
        )
        return context, binding

    def close(self) -> None:
        self._projects.clear()
        self._by_root.clear()
        self.repository.close()
