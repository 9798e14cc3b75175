from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_APPLY_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8766
    data_dir: str = "~/.blaze-backend"
    consent_path: str | None = None
    apply_mode: str = "auto"
    apply_max_attempts: int = DEFAULT_APPLY_MAX_ATTEMPTS
    git_bin: str = "git"
    git_author_name: str = "Blaze"
    git_author_email: str = "blaze@localhost"
    git_timeout_seconds: int = 60
    install_cmd: str = "npm install"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_timeout_seconds: int = 120
    log_level: str = "INFO"


def load_settings() -> Settings:
    openai_api_key = (os.getenv("BLAZE_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
    apply_mode = os.getenv("BLAZE_APPLY_MODE", "auto").strip().lower()
    return Settings(
        host=os.getenv("BLAZE_HOST", "127.0.0.1"),
        port=int(os.getenv("BLAZE_PORT", "8766")),
        data_dir=os.getenv("BLAZE_DATA_DIR", "~/.blaze-backend").strip(),
        consent_path=(os.getenv("BLAZE_CONSENT_PATH") or "").strip() or None,
        apply_mode=apply_mode if apply_mode in {"auto", "manual"} else "auto",
        apply_max_attempts=max(1, int(os.getenv("BLAZE_APPLY_MAX_ATTEMPTS", str(DEFAULT_APPLY_MAX_ATTEMPTS)))),
        git_bin=os.getenv("BLAZE_GIT_BIN", "git").strip(),
        git_author_name=os.getenv("BLAZE_GIT_AUTHOR_NAME", "Blaze").strip(),
        git_author_email=os.getenv("BLAZE_GIT_AUTHOR_EMAIL", "blaze@localhost").strip(),
        git_timeout_seconds=int(os.getenv("BLAZE_GIT_TIMEOUT_SECONDS", "60")),
        install_cmd=os.getenv("BLAZE_INSTALL_CMD", "npm install").strip(),
        openai_api_key=openai_api_key or None,
        openai_model=os.getenv("BLAZE_OPENAI_MODEL", "gpt-5").strip(),
        openai_base_url=os.getenv("BLAZE_OPENAI_BASE_URL", "https://api.openai.com/v1").strip(),
        openai_timeout_seconds=int(os.getenv("BLAZE_OPENAI_TIMEOUT_SECONDS", "120")),
        log_level=os.getenv("BLAZE_LOG_LEVEL", "INFO").strip().upper(),
    )
