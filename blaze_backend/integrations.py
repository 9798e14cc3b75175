from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any

from .config import Settings

FALLBACK_BIN_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "~/.local/bin",
)


def resolve_binary(binary: str) -> str | None:
    candidate = Path(binary).expanduser()
    if "/" in binary or binary.startswith("."):
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate.resolve())
        return None

    found = shutil.which(binary)
    if found:
        return found

    for raw_dir in FALLBACK_BIN_DIRS:
        path = (Path(raw_dir) / binary).expanduser()
        if path.exists() and os.access(path, os.X_OK):
            return str(path.resolve())
    return None


def integration_status(settings: Settings) -> dict[str, Any]:
    git_resolved = resolve_binary(settings.git_bin)
    install_parts = shlex.split(settings.install_cmd) if settings.install_cmd else []
    installer_resolved = resolve_binary(install_parts[0]) if install_parts else None
    status: dict[str, Any] = {
        "git_bin": settings.git_bin,
        "git_bin_resolved": git_resolved,
        "git_available": git_resolved is not None,
        "install_cmd": settings.install_cmd,
        "installer_available": installer_resolved is not None,
        "openai_api_key_set": bool(settings.openai_api_key),
        "openai_model": settings.openai_model,
        "openai_base_url": settings.openai_base_url,
        "apply_mode": settings.apply_mode,
    }

    if git_resolved is None:
        status["git_version"] = None
        status["detail"] = "git binary is not executable."
    else:
        try:
            proc = subprocess.run(
                [git_resolved, "--version"],
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
            status["git_version"] = proc.stdout.strip() or None
            status["detail"] = "git is available." if proc.returncode == 0 else (proc.stderr.strip()[:1000] or "git check failed.")
        except (OSError, subprocess.TimeoutExpired) as exc:
            status["git_version"] = None
            status["detail"] = f"Failed to run `git --version`: {exc}"

    blockers: list[str] = []
    if not status["git_available"]:
        blockers.append("git is required to commit applied changes.")
    if not status["openai_api_key_set"]:
        blockers.append("No model API key configured. Set BLAZE_OPENAI_API_KEY or OPENAI_API_KEY.")
    status["ready"] = not blockers
    status["blockers"] = blockers
    return status
