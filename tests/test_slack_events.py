"""Slack event ingestion: user mapping, org resolution and the org picker."""

import json

import pytest

from orgpilot.crud import crud
from orgpilot.models.enums import JobStatus
from orgpilot.models.enums import JobType
from orgpilot.models.enums import OrgType
from orgpilot.models.enums import TokenStatus
from orgpilot.schemas.schemas import PickOrgContinuation
from orgpilot.services.slack_events import EMPTY_MESSAGE
from orgpilot.services.slack_events import NO_ACCOUNT_MESSAGE
from orgpilot.services.slack_events import NO_ORGS_MESSAGE
from orgpilot.services.slack_events import PICKER_FALLBACK_TEXT
from orgpilot.services.slack_events import InvalidContinuation
from orgpilot.services.slack_events import classify_job_type
from orgpilot.services.slack_events import parse_pick_action
from orgpilot.services.slack_events import strip_mention

TS = "1700000000.000100"


def mention(text="<@UBOT> how many accounts do we have", **fields):
    event = {"type": "app_mention", "text": text, "channel": "C1", "user": "U1", "ts": TS}
    event.update(fields)
    return event


@pytest.fixture
def known_user(slack_api, user, slack_connection):
    slack_api.emails["U1"] = "Ada@Acme.test"
    return user


def queued_payloads(runtime):
    return [entry.payload for entry in runtime.queue.claim(10)]


@pytest.mark.asyncio
async def test_single_org_mention_creates_and_enqueues_job(runtime, known_user, make_org, db_session):
    org = make_org()

    job_id = await runtime.events.handle_event("T123", mention())

    job = crud.get_job(db_session, job_id)
    assert job.status == JobStatus.QUEUED
    assert job.org_id == org.id
    assert job.user_id == known_user.id
    assert job.description == "how many accounts do we have"
    assert job.type == JobType.QUERY
    assert (job.slack_channel, job.slack_thread_ts) == ("C1", TS)
    assert f"Org {org.id} resolved via single_org" in [log.message for log in job.logs]
    assert queued_payloads(runtime) == [{"org_id": org.id, "account_id": job.account_id}]


@pytest.mark.asyncio
async def test_reply_in_thread_uses_thread_ts(runtime, known_user, make_org, db_session):
    make_org()

    job_id = await runtime.events.handle_event("T123", mention(thread_ts="1699999999.000001"))

    assert crud.get_job(db_session, job_id).slack_thread_ts == "1699999999.000001"


@pytest.mark.asyncio
async def test_intent_picks_production_for_reporting_question(runtime, known_user, make_org, db_session):
    prod = make_org("Acme Production")
    make_org("Globex UAT", OrgType.SANDBOX)

    job_id = await runtime.events.handle_event("T123", mention())

    job = crud.get_job(db_session, job_id)
    assert job.org_id == prod.id
    assert f"Org {prod.id} resolved via intent" in [log.message for log in job.logs]


@pytest.mark.asyncio
async def test_ambiguous_message_posts_org_picker(runtime, known_user, make_org, slack_api, db_session):
    prod = make_org("Acme Production")
    uat = make_org("Globex UAT", OrgType.SANDBOX)

    job_id = await runtime.events.handle_event("T123", mention("<@UBOT> hello there"))

    assert job_id is None
    assert crud.get_job(db_session, 1) is None
    [post] = slack_api.posts
    assert post["text"] == PICKER_FALLBACK_TEXT
    assert post["thread_ts"] == TS
    buttons = post["blocks"][1]["elements"]
    assert [b["action_id"] for b in buttons] == [f"pick_org_{prod.id}", f"pick_org_{uat.id}"]
    value = json.loads(buttons[1]["value"])
    assert value == {
        "orgId": uat.id,
        "userId": known_user.id,
        "accountId": known_user.account_id,
        "messageText": "hello there",
        "channel": "C1",
        "threadTs": TS,
    }


@pytest.mark.asyncio
async def test_expired_org_is_not_a_candidate(runtime, known_user, make_org, db_session):
    make_org("Acme Production")
    uat = make_org("Globex UAT", OrgType.SANDBOX, token_status=TokenStatus.EXPIRED)

    job_id = await runtime.events.handle_event("T123", mention("<@UBOT> hello there"))

    assert crud.get_job(db_session, job_id).org_id != uat.id


@pytest.mark.asyncio
async def test_unknown_slack_user_gets_signup_hint(runtime, slack_api, slack_connection, make_org):
    make_org()
    slack_api.emails["U1"] = "stranger@elsewhere.test"

    assert await runtime.events.handle_event("T123", mention()) is None
    assert slack_api.texts == [NO_ACCOUNT_MESSAGE]


@pytest.mark.asyncio
async def test_empty_mention_is_answered(runtime, known_user, make_org, slack_api):
    make_org()

    assert await runtime.events.handle_event("T123", mention("<@UBOT>   ")) is None
    assert slack_api.texts == [EMPTY_MESSAGE]


@pytest.mark.asyncio
async def test_account_without_orgs_is_told_to_connect(runtime, known_user, slack_api):
    assert await runtime.events.handle_event("T123", mention()) is None
    assert slack_api.texts == [NO_ORGS_MESSAGE]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event",
    [
        mention(bot_id="B1"),
        mention(subtype="message_changed"),
        mention(user="UBOT"),
        mention(type="reaction_added"),
        {"type": "message", "channel_type": "channel", "text": "hi", "channel": "C1", "user": "U1", "ts": TS},
    ],
)
async def test_ignored_events(runtime, known_user, make_org, slack_api, event):
    make_org()

    assert await runtime.events.handle_event("T123", event) is None
    assert slack_api.posts == []


@pytest.mark.asyncio
async def test_unknown_workspace_is_ignored(runtime, known_user, make_org, slack_api):
    make_org()

    assert await runtime.events.handle_event("T999", mention()) is None
    assert slack_api.posts == []


@pytest.mark.asyncio
async def test_direct_message_is_handled(runtime, known_user, make_org):
    make_org()

    event = {"type": "message", "channel_type": "im", "text": "list flows", "channel": "D1", "user": "U1", "ts": TS}

    assert await runtime.events.handle_event("T123", event) is not None


# ---------------------------------------------------------------------------
# Org picker continuation
# ---------------------------------------------------------------------------


def continuation(org, user, **fields):
    data = {
        "orgId": org.id,
        "userId": user.id,
        "accountId": user.account_id,
        "messageText": "hello there",
        "channel": "C1",
        "threadTs": TS,
    }
    data.update(fields)
    return PickOrgContinuation.model_validate(data)


@pytest.mark.asyncio
async def test_pick_dispatches_to_chosen_org(runtime, user, make_org, db_session):
    org = make_org("Globex UAT", OrgType.SANDBOX)

    job_id = await runtime.events.handle_pick(continuation(org, user))

    job = crud.get_job(db_session, job_id)
    assert job.org_id == org.id
    assert f"Org {org.id} resolved via picker" in [log.message for log in job.logs]


@pytest.mark.asyncio
async def test_pick_rejects_foreign_or_expired_org(runtime, user, make_org, db_session):
    expired = make_org("Old Sandbox", OrgType.SANDBOX, token_status=TokenStatus.EXPIRED)

    with pytest.raises(InvalidContinuation, match="needs to be reconnected"):
        await runtime.events.handle_pick(continuation(expired, user))
    with pytest.raises(InvalidContinuation, match="not connected"):
        await runtime.events.handle_pick(continuation(expired, user, accountId=user.account_id + 1))
    assert runtime.queue.claim(10) == []


def test_parse_pick_action():
    value = {"orgId": 2, "userId": 1, "accountId": 1, "messageText": "hi", "channel": "C1", "threadTs": TS}
    payload = {"type": "block_actions", "actions": [{"action_id": "pick_org_2", "value": json.dumps(value)}]}

    parsed = parse_pick_action(payload)

    assert parsed.org_id == 2
    assert parsed.thread_ts == TS
    assert parse_pick_action({"type": "view_submission"}) is None
    assert parse_pick_action({"type": "block_actions", "actions": []}) is None


def test_parse_pick_action_rejects_incomplete_value():
    payload = {"type": "block_actions", "actions": [{"action_id": "pick_org_2", "value": json.dumps({"orgId": 2})}]}

    with pytest.raises(InvalidContinuation):
        parse_pick_action(payload)


def test_strip_mention():
    assert strip_mention("<@U0ABC123> list flows") == "list flows"
    assert strip_mention("no mention here") == "no mention here"
    assert strip_mention("<@U0ABC123>") == ""


@pytest.mark.parametrize(
    "text, expected",
    [
        ("run tests for AccountService", JobType.TEST),
        ("create an apex class", JobType.CODE_CHANGE),
        ("how many leads came in", JobType.QUERY),
        ("hello", JobType.GENERAL),
    ],
)
def test_classify_job_type(text, expected):
    assert classify_job_type(text) == expected
