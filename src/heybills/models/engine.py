"""Health snapshot of the OCR engine lifecycle."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from heybills.errors import ErrorCode


class EngineStatus(BaseModel):
    """Read-only view of the engine lifecycle exposed to monitoring."""

    state: Literal["uninitialized", "initializing", "ready", "failed"]
    generation: int = 0
    created_at: Optional[datetime] = None
    last_error_code: Optional[ErrorCode] = None
    last_error_message: Optional[str] = None
    consecutive_failures: int = 0
    cooldown_remaining_seconds: Optional[float] = None

    model_config = ConfigDict(frozen=True)
