"""Chat model factory for the agent loop."""

import logging
from typing import Any
from typing import Dict
from typing import List

from langchain_openai import ChatOpenAI

from orgpilot.config import MOCK_MODEL
from orgpilot.config import Settings

logger = logging.getLogger(__name__)


def make_llm(settings: Settings, tools: List[Dict[str, Any]]):
    """Return a chat model with *tools* (OpenAI function schemas) bound."""

    if settings.agent_model == MOCK_MODEL:
        from orgpilot.testing.mock_llm import MockChatLLM

        return MockChatLLM().bind_tools(tools)

    kwargs: dict = {
        "model": settings.agent_model,
        "api_key": settings.openai_api_key,
    }

    # Enforce a maximum completion length if configured (>0)
    if settings.agent_max_tokens and settings.agent_max_tokens > 0:
        kwargs["max_tokens"] = settings.agent_max_tokens

    llm = ChatOpenAI(**kwargs)
    return llm.bind_tools(tools)
