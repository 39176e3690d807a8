"""
Pydantic schemas for token refresh results.
"""

from collections import Counter
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import RefreshOutcomeStatus


class RefreshOutcome(BaseModel):
    """What happened to one credential during a refresh attempt."""

    model_config = ConfigDict(frozen=True)

    credential_id: str
    status: RefreshOutcomeStatus
    reason: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


class RefreshCycleResult(BaseModel):
    """Summary of one pass over the refresh candidates."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    candidates: int = 0
    outcomes: List[RefreshOutcome] = Field(default_factory=list)

    def count(self, status: RefreshOutcomeStatus) -> int:
        return Counter(o.status for o in self.outcomes)[status]

    @property
    def refreshed(self) -> int:
        return self.count(RefreshOutcomeStatus.REFRESHED)

    @property
    def skipped(self) -> int:
        return self.count(RefreshOutcomeStatus.SKIPPED)

    @property
    def retry_scheduled(self) -> int:
        return self.count(RefreshOutcomeStatus.RETRY_SCHEDULED)

    @property
    def failed(self) -> int:
        return self.count(RefreshOutcomeStatus.FAILED)
