from datetime import datetime
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from orgpilot.models.enums import JobStatus
from orgpilot.models.enums import JobType


class JobRespondRequest(BaseModel):
    response: str = Field(min_length=1)


class JobLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    level: str
    message: str
    timestamp: Optional[datetime] = None


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: Optional[int] = None
    status: JobStatus
    type: JobType
    title: str
    pending_question: Optional[str] = None
    turn_count: int = 0
    attempts: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    logs: List[JobLogOut] = []


class PickOrgContinuation(BaseModel):
    """JSON value carried by a chooser button.

    Field names are camelCase on the wire because Slack echoes the button
    value back verbatim.
    """

    model_config = ConfigDict(populate_by_name=True)

    org_id: int = Field(alias="orgId")
    user_id: int = Field(alias="userId")
    account_id: int = Field(alias="accountId")
    message_text: str = Field(alias="messageText", min_length=1)
    channel: str = Field(min_length=1)
    thread_ts: str = Field(alias="threadTs", min_length=1)
