from langchain_core.messages import AIMessage
from langchain_core.messages import HumanMessage
from langchain_core.messages import ToolMessage

from orgpilot.schemas.transcript import ModelText
from orgpilot.schemas.transcript import ToolCall
from orgpilot.schemas.transcript import ToolInvocation
from orgpilot.schemas.transcript import ToolOutput
from orgpilot.schemas.transcript import ToolResult
from orgpilot.schemas.transcript import Transcript
from orgpilot.schemas.transcript import UserText
from orgpilot.schemas.transcript import turn_from_ai_message


def _call_turn():
    return ToolCall(calls=[ToolInvocation(id="call_1", name="query_salesforce", args={"soql": "SELECT COUNT() FROM Account"})])


def test_json_form_is_tagged_by_kind():
    transcript = Transcript([UserText(text="how many accounts?"), _call_turn()])

    data = transcript.to_json()

    assert [turn["kind"] for turn in data] == ["user_text", "tool_call"]
    restored = Transcript.from_json(data)
    assert isinstance(restored.turns[1], ToolCall)
    assert restored.turns[1].calls[0].args == {"soql": "SELECT COUNT() FROM Account"}


def test_to_messages_pairs_tool_calls_with_results():
    transcript = Transcript(
        [
            UserText(text="how many accounts?"),
            _call_turn(),
            ToolResult(results=[ToolOutput(call_id="call_1", name="query_salesforce", content="Total records: 3")]),
            ModelText(text="You have 3 accounts."),
        ]
    )

    messages = transcript.to_messages()

    assert [type(m) for m in messages] == [HumanMessage, AIMessage, ToolMessage, AIMessage]
    assert messages[1].tool_calls[0]["id"] == "call_1"
    assert messages[2].tool_call_id == "call_1"
    assert messages[2].status == "success"


def test_error_results_are_flagged():
    transcript = Transcript(
        [ToolResult(results=[ToolOutput(call_id="c", name="describe_object", content="nope", is_error=True)])]
    )

    assert transcript.to_messages()[0].status == "error"


def test_turn_from_ai_message():
    answer = turn_from_ai_message(AIMessage(content="Done."))
    call = turn_from_ai_message(
        AIMessage(content="", tool_calls=[{"id": "c1", "name": "list_flows", "args": {}}])
    )

    assert answer == ModelText(text="Done.")
    assert isinstance(call, ToolCall)
    assert call.calls == [ToolInvocation(id="c1", name="list_flows", args={})]


def test_content_blocks_keep_text_only():
    message = AIMessage(content=[{"type": "text", "text": "Hello "}, {"type": "image_url", "image_url": {"url": "x"}}, "world"])

    assert turn_from_ai_message(message) == ModelText(text="Hello world")


def test_prepare_resume_drops_unanswered_tool_call():
    transcript = Transcript([UserText(text="how many accounts?"), _call_turn()])

    appended = transcript.prepare_resume("how many accounts?")

    assert appended is False
    assert [turn.kind for turn in transcript.turns] == ["user_text"]


def test_prepare_resume_continues_after_tool_result():
    transcript = Transcript(
        [
            UserText(text="q"),
            _call_turn(),
            ToolResult(results=[ToolOutput(call_id="call_1", name="query_salesforce", content="Total records: 3")]),
        ]
    )

    assert transcript.prepare_resume("q") is False
    assert len(transcript) == 3


def test_prepare_resume_appends_after_final_answer():
    transcript = Transcript([UserText(text="first"), ModelText(text="answer")])

    assert transcript.prepare_resume("follow-up") is True
    assert transcript.last == UserText(text="follow-up")
