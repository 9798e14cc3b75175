from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from .config import Settings
from .types import ConsentDecision

logger = logging.getLogger(__name__)

CONSENT_DECISIONS = {"never", "ask", "always"}


def _default_consent_path(settings: Settings) -> Path:
    return Path(settings.data_dir).expanduser() / "consents.json"


class ConsentStore:
    """Per-action consent overrides, persisted as a JSON object ``{action: decision}``."""

    def __init__(self, settings: Settings, *, known_actions: set[str] | None = None):
        self._lock = threading.RLock()
        self._path = Path(settings.consent_path).expanduser() if settings.consent_path else _default_consent_path(settings)
        self._known_actions = known_actions
        self._overrides: dict[str, ConsentDecision] = {}
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, action: str) -> ConsentDecision | None:
        with self._lock:
            return self._overrides.get(action)

    def resolve(self, action: str, default: ConsentDecision) -> ConsentDecision:
        return self.get(action) or default

    def overrides(self) -> dict[str, ConsentDecision]:
        with self._lock:
            return dict(self._overrides)

    def set(self, action: str, decision: str) -> ConsentDecision:
        cleaned_action = action.strip()
        cleaned = decision.strip().lower()
        if cleaned not in CONSENT_DECISIONS:
            raise ValueError("consent must be one of: never, ask, always")
        if self._known_actions is not None and cleaned_action not in self._known_actions:
            raise ValueError(f"Unknown action: {cleaned_action}")
        with self._lock:
            self._overrides[cleaned_action] = cleaned  # type: ignore[assignment]
            self._persist_locked()
        logger.info("Consent override stored action=%s decision=%s", cleaned_action, cleaned)
        return cleaned  # type: ignore[return-value]

    def reset(self) -> None:
        with self._lock:
            self._overrides.clear()
            self._persist_locked()

    def public_view(self, defaults: dict[str, ConsentDecision]) -> dict[str, Any]:
        overrides = self.overrides()
        return {
            "actions": [
                {
                    "action": name,
                    "default": default,
                    "override": overrides.get(name),
                    "effective": overrides.get(name) or default,
                }
                for name, default in sorted(defaults.items())
            ],
            "consent_path": str(self._path),
        }

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            parsed = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed loading consent overrides from %s", self._path)
            return
        if not isinstance(parsed, dict):
            logger.warning("Consent file is not an object; ignoring path=%s", self._path)
            return

        for action, decision in parsed.items():
            if isinstance(decision, str) and decision in CONSENT_DECISIONS:
                self._overrides[str(action)] = decision  # type: ignore[assignment]
            else:
                logger.warning("Ignoring invalid consent override action=%s decision=%r", action, decision)

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self._overrides, indent=2, sort_keys=True, ensure_ascii=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(temp_path, self._path)
