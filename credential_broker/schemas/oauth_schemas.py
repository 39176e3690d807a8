"""
Pydantic schemas for OAuth flows.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class FlowStart(BaseModel):
    """Returned by begin_flow: where to send the user, and the state to expect back."""

    model_config = ConfigDict(frozen=True)

    authorization_url: str
    state: str
    expires_at: datetime
