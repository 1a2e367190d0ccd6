"""Conversation transcript stored on each job.

A transcript is an ordered list of turns.  Each turn is one variant of a
tagged union keyed on ``kind``:

* ``user_text``: a message from the Slack user
* ``model_text``: a final textual answer from the model
* ``tool_call``: a model turn requesting one or more tool invocations
* ``tool_result``: the merged results of executing one such batch

The JSON form is what lands in ``Job.conversation``; :meth:`Transcript.to_messages`
turns it into LangChain messages for the model call.
"""

from __future__ import annotations

from typing import Annotated
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Union

from langchain_core.messages import AIMessage
from langchain_core.messages import BaseMessage
from langchain_core.messages import HumanMessage
from langchain_core.messages import ToolMessage
from pydantic import BaseModel
from pydantic import Field
from pydantic import TypeAdapter


class UserText(BaseModel):
    kind: Literal["user_text"] = "user_text"
    text: str


class ModelText(BaseModel):
    kind: Literal["model_text"] = "model_text"
    text: str


class ToolInvocation(BaseModel):
    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    text: str = ""
    calls: List[ToolInvocation]


class ToolOutput(BaseModel):
    call_id: str
    name: str
    content: str
    is_error: bool = False


class ToolResult(BaseModel):
    kind: Literal["tool_result"] = "tool_result"
    results: List[ToolOutput]


Turn = Annotated[Union[UserText, ModelText, ToolCall, ToolResult], Field(discriminator="kind")]

_TURNS = TypeAdapter(List[Turn])


def _message_text(message: AIMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Content-block form: keep only the text parts.
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def turn_from_ai_message(message: AIMessage) -> Union[ModelText, ToolCall]:
    """Classify a model response as a text answer or a tool-call turn."""

    text = _message_text(message)
    if message.tool_calls:
        calls = [
            ToolInvocation(id=call.get("id") or f"call_{idx}", name=call["name"], args=call.get("args") or {})
            for idx, call in enumerate(message.tool_calls)
        ]
        return ToolCall(text=text, calls=calls)
    return ModelText(text=text)


class Transcript:
    """Mutable wrapper around a list of validated turns."""

    def __init__(self, turns: List[Turn] | None = None):
        self.turns: List[Turn] = list(turns or [])

    @classmethod
    def from_json(cls, data: List[Dict[str, Any]] | None) -> "Transcript":
        return cls(_TURNS.validate_python(data or []))

    def to_json(self) -> List[Dict[str, Any]]:
        return [turn.model_dump() for turn in self.turns]

    def append(self, turn: Turn) -> None:
        self.turns.append(turn)

    @property
    def last(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    def __len__(self) -> int:
        return len(self.turns)

    def prepare_resume(self, message_text: str) -> bool:
        """Make a checkpointed transcript runnable again.

        A trailing tool-call turn whose results were never recorded is
        dropped.  When the transcript then ends with a user turn or a tool
        result the model simply continues from there; otherwise
        *message_text* is appended.  Returns ``True`` if it was appended.
        """

        while isinstance(self.last, ToolCall):
            self.turns.pop()
        if isinstance(self.last, (UserText, ToolResult)):
            return False
        self.append(UserText(text=message_text))
        return True

    def to_messages(self) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        for turn in self.turns:
            if isinstance(turn, UserText):
                messages.append(HumanMessage(content=turn.text))
            elif isinstance(turn, ModelText):
                messages.append(AIMessage(content=turn.text))
            elif isinstance(turn, ToolCall):
                messages.append(
                    AIMessage(
                        content=turn.text,
                        tool_calls=[
                            {"id": call.id, "name": call.name, "args": call.args, "type": "tool_call"}
                            for call in turn.calls
                        ],
                    )
                )
            elif isinstance(turn, ToolResult):
                for result in turn.results:
                    messages.append(
                        ToolMessage(
                            content=result.content,
                            tool_call_id=result.call_id,
                            name=result.name,
                            status="error" if result.is_error else "success",
                        )
                    )
            else:  # pragma: no cover
                raise TypeError(f"Unknown transcript turn: {turn!r}")
        return messages


__all__ = [
    "ModelText",
    "ToolCall",
    "ToolInvocation",
    "ToolOutput",
    "ToolResult",
    "Transcript",
    "Turn",
    "UserText",
    "turn_from_ai_message",
]
