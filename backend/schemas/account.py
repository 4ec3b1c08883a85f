"""Account schemas — billing facts mirrored from the payments provider."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"


class UserAccount(BaseModel):
    """User record subset the usage engine relies on.

    subscription_status is None for new users who never checked out.
    """
    user_id: str
    email: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_period_end: Optional[datetime] = None
    session_limit_minutes: Optional[int] = None
