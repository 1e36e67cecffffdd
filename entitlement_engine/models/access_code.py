"""
entitlement_engine/models/access_code.py

One-time (or capped) codes that grant bonus trial days.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,64}$")


def normalize_code(code: str) -> str:
    """Codes are case-insensitive; store and compare the trimmed upper-case form."""
    return (code or "").strip().upper()


class AccessCode(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    days_granted: int
    max_redemptions: Optional[int] = 1  # None = unlimited
    redemption_count: int = 0
    expires_at: Optional[datetime] = None
    is_active: bool = True
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    @property
    def is_exhausted(self) -> bool:
        return self.max_redemptions is not None and self.redemption_count >= self.max_redemptions
