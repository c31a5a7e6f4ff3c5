from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class BlockInfoResponse(BaseModel):
    identifier: str
    reason: str
    blocked_at: datetime
    expires_at: datetime


class ManualBlockRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)
    reason: str = Field(default="manual", min_length=1, max_length=64)
    duration_seconds: Optional[float] = Field(default=None, gt=0, le=7 * 24 * 60 * 60)


class SecurityEventRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    kind: str = Field(min_length=1, max_length=64)
    identifier: str = Field(min_length=1, max_length=255)
    context: dict[str, Any] = Field(default_factory=dict)


class SecurityEventAccepted(BaseModel):
    status: str = "accepted"
    kind: str
    identifier: str
    blocked: bool
