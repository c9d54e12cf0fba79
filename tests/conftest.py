from __future__ import annotations

import json
import os
import shutil
from pathlib import Path

import pytest

# Set env before any statement_intake imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.statement_intake_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("AI_API_KEY", "test-key")

from statement_intake.modules.extraction.capability import ExtractionCapability, TextPart  # noqa: E402
from statement_intake.modules.extraction.errors import CapabilityConfigurationError  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import statement_intake.models  # noqa: F401
    from statement_intake.core.db import engine
    from statement_intake.core.models import Base

    import statement_intake.core.storage as storage_mod

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


class ScriptedCapability(ExtractionCapability):
    """Test double for the reasoning capability.

    `responder(parts)` returns a reply string (dicts are JSON-encoded) or raises. Every
    call is recorded with its parts and timeout.
    """

    def __init__(self, responder, *, configured: bool = True):
        self._responder = responder
        self._configured = configured
        self.calls: list[dict] = []

    def ensure_configured(self) -> None:
        if not self._configured:
            raise CapabilityConfigurationError("AI_API_KEY is not configured")

    def generate(self, parts, *, timeout=None) -> str:
        self.calls.append({"parts": list(parts), "timeout": timeout})
        reply = self._responder(list(parts))
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


def prompt_of(parts) -> str:
    texts = [p.text for p in parts if isinstance(p, TextPart)]
    return texts[-1] if texts else ""
