"""Turn Slack events and org-picker clicks into queued jobs.

Both entry points run *after* the HTTP request has been acknowledged; the
routers spawn them as detached tasks.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from orgpilot import constants
from orgpilot.crud import crud
from orgpilot.database import db_session
from orgpilot.models.enums import JobType
from orgpilot.models.enums import LogLevel
from orgpilot.models.enums import OrgType
from orgpilot.models.enums import TokenStatus
from orgpilot.schemas.schemas import PickOrgContinuation
from orgpilot.services.dispatch_queue import DispatchQueue
from orgpilot.services.org_resolver import OrgCandidate
from orgpilot.services.org_resolver import OrgResolver
from orgpilot.services.org_resolver import ResolutionContext
from orgpilot.services.slack import SlackService
from orgpilot.utils.crypto import decrypt

logger = logging.getLogger(__name__)

PICK_ORG_PREFIX = "pick_org_"
PICKER_HEADER = "You have multiple Salesforce orgs connected. Which one should I use?"
PICKER_FALLBACK_TEXT = "Which Salesforce org should I use?"

NO_ACCOUNT_MESSAGE = (
    "I couldn't find an OrgPilot account linked to your Slack email. "
    "Please sign up or log in and make sure your email matches."
)
EMPTY_MESSAGE = "It looks like your message was empty. Tell me what you'd like to do in Salesforce!"
NO_ORGS_MESSAGE = "No Salesforce org is connected to your account. Connect one and try again."

_MENTION_PREFIX = re.compile(r"^<@[A-Z0-9]+>\s*", re.IGNORECASE)

_TEST_WORDS = ("run test", "apex test", "test class", "code coverage", "unit test")
_CODE_WORDS = ("create", "update", "deploy", "refactor", "modify", "fix the code", "apex class", "apex trigger", "trigger")
_QUERY_WORDS = ("how many", "count", "list", "show", "what are", "who has", "find", "query", "look up", "describe")


class InvalidContinuation(ValueError):
    """Malformed or stale org-picker payload."""


def strip_mention(text: str) -> str:
    """``"<@U123> do something"`` → ``"do something"``."""

    return _MENTION_PREFIX.sub("", text or "").strip()


def classify_job_type(message_text: str) -> JobType:
    text = message_text.lower()
    if any(word in text for word in _TEST_WORDS):
        return JobType.TEST
    if any(word in text for word in _CODE_WORDS):
        return JobType.CODE_CHANGE
    if any(word in text for word in _QUERY_WORDS):
        return JobType.QUERY
    return JobType.GENERAL


def build_org_picker_blocks(orgs: List[OrgCandidate], continuation: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Block Kit chooser with one button per org.

    Every button value carries the full continuation so the click can be
    processed without any server-side state.
    """

    buttons = []
    for org in orgs:
        value = {"orgId": org.id, **continuation}
        buttons.append(
            {
                "type": "button",
                "text": {"type": "plain_text", "text": org.name[:75]},
                "action_id": f"{PICK_ORG_PREFIX}{org.id}",
                "value": json.dumps(value),
            }
        )
    return [
        {"type": "section", "text": {"type": "mrkdwn", "text": PICKER_HEADER}},
        {"type": "actions", "block_id": "org_picker", "elements": buttons},
    ]


def parse_pick_action(payload: Any) -> Optional[PickOrgContinuation]:
    """Extract the continuation from an interaction payload.

    Returns ``None`` for interactions that are not org-picker clicks and
    raises :class:`InvalidContinuation` for a malformed payload or button
    value.
    """

    if not isinstance(payload, dict):
        raise InvalidContinuation("Interaction payload must be a JSON object")
    if payload.get("type") != "block_actions":
        return None
    actions = payload.get("actions") or []
    if not isinstance(actions, list):
        raise InvalidContinuation("Interaction actions must be a list")
    if not actions:
        return None
    action = actions[0]
    if not isinstance(action, dict):
        raise InvalidContinuation("Interaction action must be a JSON object")
    if not str(action.get("action_id", "")).startswith(PICK_ORG_PREFIX):
        return None
    try:
        return PickOrgContinuation.model_validate(json.loads(action.get("value") or ""))
    except (ValueError, ValidationError) as exc:
        raise InvalidContinuation(f"Invalid org picker payload: {exc}") from exc


class SlackEventHandler:
    def __init__(
        self,
        session_factory: sessionmaker,
        slack: SlackService,
        resolver: OrgResolver,
        queue: DispatchQueue,
    ):
        self._session_factory = session_factory
        self._slack = slack
        self._resolver = resolver
        self._queue = queue

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, team_id: str, event: Dict[str, Any]) -> Optional[int]:
        """Process one ``event_callback``; returns the created job id, if any."""

        is_mention = event.get("type") == "app_mention"
        is_dm = event.get("type") == "message" and event.get("channel_type") == "im"
        if not (is_mention or is_dm):
            return None
        if not all(event.get(k) for k in ("text", "channel", "user", "ts")):
            return None
        if event.get("bot_id") or event.get("subtype"):
            return None

        with db_session(self._session_factory) as db:
            connection = crud.get_slack_connection_by_workspace(db, team_id)
            if connection is None:
                logger.warning(f"No Slack connection for team {team_id}")
                return None
            account_id = connection.account_id
            bot_user_id = connection.bot_user_id
            token = decrypt(connection.bot_token)

        if event["user"] == bot_user_id:
            return None

        channel = event["channel"]
        thread_ts = event.get("thread_ts") or event["ts"]
        reply = self._slack.reply_channel(token, channel, thread_ts)

        slack_user = await self._slack.get_user(token, event["user"])
        user_id = self._resolve_user(slack_user.email, account_id)
        if user_id is None:
            await reply.send(NO_ACCOUNT_MESSAGE)
            return None

        message_text = strip_mention(event["text"])
        if not message_text:
            await reply.send(EMPTY_MESSAGE)
            return None

        with db_session(self._session_factory) as db:
            orgs = [
                OrgCandidate(id=o.id, name=o.name, type=OrgType(o.type))
                for o in crud.get_valid_orgs(db, account_id)
            ]
            thread_job = crud.find_thread_job(db, account_id, channel, thread_ts)
            thread_org_id = thread_job.org_id if thread_job else None

        if not orgs:
            await reply.send(NO_ORGS_MESSAGE)
            return None

        resolution = self._resolver.resolve(
            ResolutionContext(message_text=message_text, orgs=orgs, thread_org_id=thread_org_id)
        )
        if resolution.org is not None:
            return self.dispatch(
                account_id=account_id,
                org_id=resolution.org.id,
                user_id=user_id,
                message_text=message_text,
                channel=channel,
                thread_ts=thread_ts,
                resolved_by=resolution.strategy,
            )

        blocks = build_org_picker_blocks(
            orgs,
            {
                "userId": user_id,
                "accountId": account_id,
                "messageText": message_text,
                "channel": channel,
                "threadTs": thread_ts,
            },
        )
        await reply.send(PICKER_FALLBACK_TEXT, blocks=blocks)
        logger.info(f"Posted org picker with {len(orgs)} orgs for account {account_id}")
        return None

    def _resolve_user(self, email: Optional[str], account_id: int) -> Optional[int]:
        if not email:
            logger.info("Slack profile has no email; is the users:read.email scope missing?")
            return None
        with db_session(self._session_factory) as db:
            user = crud.get_user_by_email(db, email)
            if user is None:
                return None
            if user.account_id != account_id:
                logger.info(f"User {user.id} belongs to account {user.account_id}, not {account_id}")
                return None
            return user.id

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    def validate_continuation(self, continuation: PickOrgContinuation) -> None:
        """The picked org must still belong to the account and hold a valid token."""

        with db_session(self._session_factory) as db:
            org = crud.get_org(db, continuation.org_id)
            if org is None or org.account_id != continuation.account_id:
                raise InvalidContinuation(f"Org {continuation.org_id} is not connected to this account")
            if TokenStatus(org.token_status) != TokenStatus.VALID:
                raise InvalidContinuation(f"Org {continuation.org_id} needs to be reconnected")
            user = crud.get_user(db, continuation.user_id)
            if user is None or user.account_id != continuation.account_id:
                raise InvalidContinuation(f"User {continuation.user_id} is not part of this account")

    async def handle_pick(self, continuation: PickOrgContinuation) -> Optional[int]:
        self.validate_continuation(continuation)
        return self.dispatch(
            account_id=continuation.account_id,
            org_id=continuation.org_id,
            user_id=continuation.user_id,
            message_text=continuation.message_text,
            channel=continuation.channel,
            thread_ts=continuation.thread_ts,
            resolved_by="picker",
        )

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def dispatch(
        self,
        *,
        account_id: int,
        org_id: int,
        user_id: Optional[int],
        message_text: str,
        channel: str,
        thread_ts: str,
        resolved_by: Optional[str],
    ) -> int:
        """Create a ``queued`` job and hand it to the dispatch queue."""

        with db_session(self._session_factory) as db:
            job = crud.create_job(
                db,
                account_id=account_id,
                org_id=org_id,
                user_id=user_id,
                title=message_text[: constants.JOB_TITLE_MAX_CHARS],
                description=message_text,
                job_type=classify_job_type(message_text),
                slack_channel=channel,
                slack_thread_ts=thread_ts,
            )
            job_id = job.id
            crud.append_job_log(db, job_id, LogLevel.INFO, "Job created from Slack message")
            crud.append_job_log(db, job_id, LogLevel.INFO, f"Org {org_id} resolved via {resolved_by}")

        self._queue.enqueue(job_id, {"org_id": org_id, "account_id": account_id})
        logger.info(f"Created and enqueued job {job_id} for org {org_id} ({resolved_by})")
        return job_id
