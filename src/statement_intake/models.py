"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from statement_intake.modules.jobs.models import ParseJob  # noqa: F401
