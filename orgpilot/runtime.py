"""Process-wide object graph.

Everything that used to be a module-level singleton (database engine,
queue, de-dup set, HTTP clients) is constructed here once by
:func:`build_runtime` and owned by the FastAPI lifespan.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Coroutine
from typing import Optional
from typing import Set

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import Engine
from sqlalchemy.orm import sessionmaker

from orgpilot.config import Settings
from orgpilot.database import initialize_database
from orgpilot.database import make_engine
from orgpilot.database import make_sessionmaker
from orgpilot.database import resolve_database_url
from orgpilot.metrics import dispatch_queue_depth
from orgpilot.services.agent_loop import AgentLoop
from orgpilot.services.cache import component_cache
from orgpilot.services.cache import inventory_cache
from orgpilot.services.dispatch_queue import DispatchQueue
from orgpilot.services.dispatch_queue import QueueOptions
from orgpilot.services.event_dedup import EventDeduplicator
from orgpilot.services.org_resolver import OrgResolver
from orgpilot.services.salesforce import SalesforceService
from orgpilot.services.slack import SlackService
from orgpilot.services.slack_events import SlackEventHandler
from orgpilot.services.worker_pool import AgentJobHandler
from orgpilot.services.worker_pool import WorkerPool
from orgpilot.tools.builtin import BUILTIN_TOOLS
from orgpilot.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

QUEUE_PRUNE_INTERVAL_S = 600


@dataclass
class Runtime:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    queue: DispatchQueue
    dedup: EventDeduplicator
    slack: SlackService
    salesforce: SalesforceService
    registry: ToolRegistry
    resolver: OrgResolver
    agent_loop: AgentLoop
    events: SlackEventHandler
    workers: WorkerPool
    scheduler: AsyncIOScheduler
    _tasks: Set[asyncio.Task] = field(default_factory=set)
    _started: bool = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task:
        """Run *coro* detached from the request; exceptions are only logged."""

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    async def start(self, *, start_workers: bool = True) -> None:
        if self._started:
            return
        self.dedup.schedule(self.scheduler)
        self.scheduler.add_job(
            self.queue.prune,
            IntervalTrigger(seconds=QUEUE_PRUNE_INTERVAL_S),
            id="dispatch_queue_prune",
            replace_existing=True,
        )
        self.scheduler.start()
        dispatch_queue_depth.set_function(self.queue.pending_count)
        if start_workers:
            await self.workers.start()
        self._started = True
        logger.info("Runtime started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.workers.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Runtime stopped")


def build_runtime(
    settings: Settings,
    *,
    engine: Optional[Engine] = None,
    slack_transport: Optional[httpx.AsyncBaseTransport] = None,
    salesforce_transport: Optional[httpx.AsyncBaseTransport] = None,
    llm_factory=None,
) -> Runtime:
    """Wire every collaborator from *settings*.

    Tests pass an in-memory *engine*, ``httpx.MockTransport`` instances and
    a scripted *llm_factory*.
    """

    if engine is None:
        engine = make_engine(resolve_database_url(settings.database_url, settings.testing))
        initialize_database(engine)
    session_factory = make_sessionmaker(engine)

    queue = DispatchQueue(
        session_factory,
        options=QueueOptions(
            attempts=settings.queue_attempts,
            backoff_s=settings.queue_backoff_s,
            keep_completed=settings.queue_keep_completed,
            keep_failed=settings.queue_keep_failed,
        ),
    )
    slack = SlackService(
        settings.slack_signing_secret,
        api_base=settings.slack_api_base,
        transport=slack_transport,
    )
    salesforce = SalesforceService(
        session_factory,
        api_version=settings.salesforce_api_version,
        timeout_s=settings.salesforce_timeout_s,
        client_id=settings.salesforce_client_id,
        client_secret=settings.salesforce_client_secret,
        default_login_url=settings.salesforce_login_url,
        transport=salesforce_transport,
    )
    registry = ToolRegistry.build(BUILTIN_TOOLS)
    resolver = OrgResolver()

    loop_kwargs = {"llm_factory": llm_factory} if llm_factory is not None else {}
    agent_loop = AgentLoop(
        session_factory,
        salesforce,
        registry,
        settings,
        inventory=inventory_cache(session_factory),
        components=component_cache(session_factory),
        **loop_kwargs,
    )
    handler = AgentJobHandler(session_factory, agent_loop, slack)
    workers = WorkerPool(
        queue,
        handler,
        concurrency=settings.worker_concurrency,
        poll_interval_s=settings.worker_poll_interval_s,
    )

    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        queue=queue,
        dedup=EventDeduplicator(settings.dedup_window_s, settings.dedup_max_events),
        slack=slack,
        salesforce=salesforce,
        registry=registry,
        resolver=resolver,
        agent_loop=agent_loop,
        events=SlackEventHandler(session_factory, slack, resolver, queue),
        workers=workers,
        scheduler=AsyncIOScheduler(),
    )
