"""FastAPI application factory.

``uvicorn orgpilot.main:app`` serves the Slack webhooks, the job/org
endpoints, ``/metrics`` and ``/health``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from orgpilot.config import get_settings
from orgpilot.constants import API_PREFIX
from orgpilot.routers.jobs import router as jobs_router
from orgpilot.routers.metrics import router as metrics_router
from orgpilot.routers.orgs import router as orgs_router
from orgpilot.routers.slack_webhooks import router as slack_router
from orgpilot.runtime import Runtime
from orgpilot.runtime import build_runtime

_settings = get_settings()

_log_level = getattr(logging, _settings.log_level.upper(), logging.INFO)
logging.basicConfig(level=_log_level, format="%(levelname)s - %(name)s - %(message)s", handlers=[logging.StreamHandler()])

# httpx logs every request at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app around *runtime* (or one built from the environment)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt: Runtime = app.state.runtime
        # Background workers keep the loop alive and would hang pytest.
        await rt.start(start_workers=not rt.settings.testing)
        try:
            yield
        finally:
            await rt.stop()

    app = FastAPI(title="OrgPilot", lifespan=lifespan)
    app.state.runtime = runtime or build_runtime(get_settings())

    app.include_router(slack_router, prefix=API_PREFIX)
    app.include_router(jobs_router, prefix=API_PREFIX)
    app.include_router(orgs_router, prefix=API_PREFIX)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health():  # noqa: D401
        return {"status": "ok"}

    return app


app = create_app()
