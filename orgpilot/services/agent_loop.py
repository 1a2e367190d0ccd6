"""Bounded tool-calling loop that answers one Slack message.

One run:

1. connects to the org (refreshing credentials when possible),
2. builds the compressed org summary through the inventory cache,
3. loads the job transcript and appends the user's message,
4. alternates model turns and tool batches up to ``max_turns``,
5. replies in the Slack thread and marks the job ``completed``.

Tool batches are executed sequentially and the transcript is
checkpointed after every batch.  Any exception escaping a run is caught
once here, reported to the user, and returned as
:attr:`LoopOutcome.ERROR`; the job status is left for the worker to
decide.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from typing import List
from typing import Optional

from langchain_core.messages import AIMessage
from langchain_core.messages import SystemMessage
from sqlalchemy.orm import sessionmaker

from orgpilot.agents_def.llm import make_llm
from orgpilot.config import Settings
from orgpilot.crud import crud
from orgpilot.database import db_session
from orgpilot.metrics import agent_turns
from orgpilot.models.enums import LogLevel
from orgpilot.prompts.system_prompt import build_system_prompt
from orgpilot.schemas.transcript import ToolCall
from orgpilot.schemas.transcript import ToolOutput
from orgpilot.schemas.transcript import ToolResult as ToolResultTurn
from orgpilot.schemas.transcript import Transcript
from orgpilot.schemas.transcript import UserText
from orgpilot.schemas.transcript import turn_from_ai_message
from orgpilot.services.cache import TTLCache
from orgpilot.services.component_cache import ComponentCacheService
from orgpilot.services.org_context import OrgContextService
from orgpilot.services.salesforce import SalesforceService
from orgpilot.services.slack import ReplyChannel
from orgpilot.tools.base import ToolContext
from orgpilot.tools.registry import ToolRegistry
from orgpilot.tools.result_utils import safe_preview
from orgpilot.utils.time import elapsed_ms

logger = logging.getLogger(__name__)

MAX_TURNS = 10

TURN_LIMIT_MESSAGE = (
    "I've reached my processing limit for this request. Please start a new message if you need more help."
)
ERROR_MESSAGE = "Sorry, I ran into an error processing your request: {error}"
EMPTY_ANSWER = "I wasn't able to generate a response."

# finish reasons that count as a natural end of the conversation
_NATURAL_STOPS = (None, "stop", "end_turn")


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    TURN_LIMIT = "turn_limit"
    UNEXPECTED_STOP = "unexpected_stop"
    ERROR = "error"


@dataclass
class AgentLoopRequest:
    job_id: int
    org_id: int
    account_id: int
    user_id: Optional[int]
    message_text: str
    reply: Optional[ReplyChannel] = None
    continuation: bool = False
    started_monotonic: Optional[float] = None


@dataclass
class AgentLoopResult:
    outcome: LoopOutcome
    turns: int = 0
    answer: Optional[str] = None
    finish_reason: Optional[str] = None
    error: Optional[str] = None


def _finish_reason(message: AIMessage) -> Optional[str]:
    metadata = getattr(message, "response_metadata", None) or {}
    return metadata.get("finish_reason") or metadata.get("stop_reason")


class AgentLoop:
    def __init__(
        self,
        session_factory: sessionmaker,
        salesforce: SalesforceService,
        registry: ToolRegistry,
        settings: Settings,
        *,
        inventory: TTLCache,
        components: TTLCache,
        llm_factory: Callable = make_llm,
    ):
        self._session_factory = session_factory
        self._salesforce = salesforce
        self._registry = registry
        self._settings = settings
        self._inventory = inventory
        self._components = components
        self._llm_factory = llm_factory
        self.max_turns = settings.agent_max_turns or MAX_TURNS

    async def run(self, request: AgentLoopRequest) -> AgentLoopResult:
        try:
            return await self._run(request)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Agent loop error for job {request.job_id}")
            await self._say_quietly(request.reply, ERROR_MESSAGE.format(error=exc))
            return AgentLoopResult(outcome=LoopOutcome.ERROR, error=str(exc))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, request: AgentLoopRequest) -> AgentLoopResult:
        started = request.started_monotonic or time.monotonic()
        connection = await self._salesforce.connect(request.org_id, job_id=request.job_id)
        async with connection.client as client:
            org_context = OrgContextService(request.org_id, client, self._inventory)
            components = ComponentCacheService(request.org_id, client, self._components)

            summary = await org_context.build_org_summary()
            transcript, base_turns = self._load_transcript(request)
            self._checkpoint(request.job_id, transcript, base_turns)

            system_prompt = build_system_prompt(connection.name, connection.type, summary)
            llm = self._llm_factory(self._settings, self._registry.openai_tools_for_org(connection.type))
            ctx = ToolContext(
                org_id=request.org_id,
                org_type=connection.type,
                client=client,
                org_context=org_context,
                components=components,
                job_id=request.job_id,
                sample_rows=self._settings.tool_sample_rows,
                record_artifact=lambda kind, filename, body: self._record_artifact(
                    request.job_id, kind, filename, body
                ),
            )

            for turn in range(1, self.max_turns + 1):
                messages = [SystemMessage(content=system_prompt)] + transcript.to_messages()
                response: AIMessage = await llm.ainvoke(messages)
                logger.info(f"Job {request.job_id} turn {turn}: {len(response.tool_calls or [])} tool call(s)")

                if response.tool_calls:
                    call_turn = turn_from_ai_message(response)
                    transcript.append(call_turn)
                    transcript.append(await self._execute_batch(request.job_id, call_turn, ctx))
                    self._checkpoint(request.job_id, transcript, base_turns + turn)
                    continue

                finish_reason = _finish_reason(response)
                if finish_reason not in _NATURAL_STOPS:
                    logger.warning(f"Job {request.job_id} stopped unexpectedly: finish_reason={finish_reason}")
                    self._checkpoint(request.job_id, transcript, base_turns + turn)
                    agent_turns.observe(turn)
                    return AgentLoopResult(
                        outcome=LoopOutcome.UNEXPECTED_STOP, turns=turn, finish_reason=finish_reason
                    )

                answer_turn = turn_from_ai_message(response)
                transcript.append(answer_turn)
                answer = answer_turn.text.strip() or EMPTY_ANSWER
                await self._say(request.reply, answer)
                self._finish(request.job_id, transcript, base_turns + turn, started)
                agent_turns.observe(turn)
                return AgentLoopResult(
                    outcome=LoopOutcome.COMPLETED, turns=turn, answer=answer, finish_reason=finish_reason
                )

        logger.warning(f"Job {request.job_id} hit the {self.max_turns}-turn limit")
        await self._say(request.reply, TURN_LIMIT_MESSAGE)
        self._finish(request.job_id, transcript, base_turns + self.max_turns, started)
        agent_turns.observe(self.max_turns)
        return AgentLoopResult(outcome=LoopOutcome.TURN_LIMIT, turns=self.max_turns)

    def _load_transcript(self, request: AgentLoopRequest) -> tuple[Transcript, int]:
        """Return the transcript to run plus the job's previous turn count.

        * continuation after a user response: the response is appended
        * re-run of a checkpointed job: resume from the checkpoint
        * fresh job: seed from the newest completed job in the thread
        """

        with db_session(self._session_factory) as db:
            job = crud.get_job(db, request.job_id)
            if job is None:
                raise crud.JobNotFound(f"Job {request.job_id} not found")
            stored = list(job.conversation or [])
            base_turns = job.turn_count or 0
            seed: List = []
            if not stored:
                seed = crud.latest_thread_transcript(
                    db,
                    account_id=request.account_id,
                    org_id=request.org_id,
                    channel=job.slack_channel,
                    thread_ts=job.slack_thread_ts,
                    exclude_job_id=job.id,
                )

        if request.continuation:
            transcript = Transcript.from_json(stored)
            transcript.append(UserText(text=request.message_text))
        elif stored:
            transcript = Transcript.from_json(stored)
            if not transcript.prepare_resume(request.message_text):
                logger.info(f"Job {request.job_id} resuming from checkpoint ({len(transcript)} turns)")
        else:
            transcript = Transcript.from_json(seed)
            transcript.append(UserText(text=request.message_text))
        return transcript, base_turns

    async def _execute_batch(self, job_id: int, call_turn: ToolCall, ctx: ToolContext) -> ToolResultTurn:
        outputs: List[ToolOutput] = []
        for call in call_turn.calls:
            result = await self._registry.execute(call.name, call.args, ctx)
            level = LogLevel.WARN if result.is_error else LogLevel.INFO
            status = "error" if result.is_error else "ok"
            with db_session(self._session_factory) as db:
                crud.append_job_log(
                    db, job_id, level, f"Tool {call.name} ({status}): {safe_preview(result.content, 300)}"
                )
            outputs.append(
                ToolOutput(call_id=call.id, name=call.name, content=result.content, is_error=result.is_error)
            )
        return ToolResultTurn(results=outputs)

    def _checkpoint(self, job_id: int, transcript: Transcript, turn_count: int) -> None:
        with db_session(self._session_factory) as db:
            crud.save_transcript(db, job_id, transcript.to_json(), turn_count=turn_count)

    def _finish(self, job_id: int, transcript: Transcript, turn_count: int, started: float) -> None:
        duration = elapsed_ms(started)
        with db_session(self._session_factory) as db:
            crud.save_transcript(db, job_id, transcript.to_json(), turn_count=turn_count)
            crud.complete_job(db, job_id, duration_ms=duration)
            crud.append_job_log(db, job_id, LogLevel.INFO, f"Job completed in {duration}ms")
        logger.info(f"Job {job_id} completed in {duration}ms")

    def _record_artifact(self, job_id: int, kind: str, filename: str, body: str) -> None:
        with db_session(self._session_factory) as db:
            crud.add_artifact(db, job_id, artifact_type=kind, filename=filename, content=body)

    @staticmethod
    async def _say(reply: Optional[ReplyChannel], text: str) -> None:
        if reply is not None:
            await reply.send(text)

    @staticmethod
    async def _say_quietly(reply: Optional[ReplyChannel], text: str) -> None:
        if reply is not None:
            await reply.send_quietly(text)
