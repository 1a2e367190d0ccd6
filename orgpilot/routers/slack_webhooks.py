"""Slack Events API and interactivity endpoints.

Slack expects an answer within three seconds, so both endpoints verify the
request signature, acknowledge immediately and hand the real work to a
detached task owned by the runtime.
"""

from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.parse import parse_qs

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from fastapi import status

from orgpilot.metrics import slack_events_total
from orgpilot.services.slack_events import InvalidContinuation
from orgpilot.services.slack_events import parse_pick_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])


async def verified_body(
    request: Request,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None),
) -> bytes:
    """Return the raw body once the Slack signature has been checked."""

    raw_body = await request.body()
    if not x_slack_signature or not x_slack_request_timestamp:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Slack signature headers")

    slack = request.app.state.runtime.slack
    if not slack.verify_signature(x_slack_signature, x_slack_request_timestamp, raw_body):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Slack signature")
    return raw_body


@router.post("/events")
async def slack_events(request: Request, raw_body: bytes = Depends(verified_body)):
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    if body.get("type") == "url_verification":
        return {"challenge": body.get("challenge")}

    if body.get("type") != "event_callback":
        return {"ok": True}

    runtime = request.app.state.runtime
    event_id = body.get("event_id")
    if isinstance(event_id, str) and event_id and runtime.dedup.seen(event_id):
        slack_events_total.labels(outcome="duplicate").inc()
        logger.info(f"Duplicate Slack event {event_id} ignored")
        return {"ok": True}

    event = body.get("event") or {}
    if not isinstance(event, dict):
        slack_events_total.labels(outcome="ignored").inc()
        return {"ok": True}

    slack_events_total.labels(outcome="accepted").inc()
    runtime.spawn(runtime.events.handle_event(body.get("team_id"), event), name=f"slack-event-{event_id}")
    return {"ok": True}


@router.post("/interactions")
async def slack_interactions(request: Request, raw_body: bytes = Depends(verified_body)):
    form = parse_qs(raw_body.decode("utf-8", errors="replace"))
    raw_payload = (form.get("payload") or [None])[0]
    if not raw_payload:
        return {"ok": True}

    try:
        payload = json.loads(raw_payload)
        continuation = parse_pick_action(payload)
    except (ValueError, InvalidContinuation) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid interaction payload: {exc}")

    if continuation is None:
        return {"ok": True}

    runtime = request.app.state.runtime
    runtime.spawn(
        runtime.events.handle_pick(continuation),
        name=f"slack-pick-{continuation.org_id}-{continuation.thread_ts}",
    )
    return {"ok": True}
