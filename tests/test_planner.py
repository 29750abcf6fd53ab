import asyncio
import json

import httpx
import pytest

from guide.models import ActionRecord, LLMConfig, SessionState
from guide.planner import (
    LLMPlanner,
    ParsedAction,
    build_user_prompt,
    llm_plan,
    parse_response,
    step_from_action,
)


def _chat_completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }


def _anthropic_message(text):
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4-20250514",
        "content": [{"type": "text", "text": text}],
        "stop_reason": "stop_sequence",
        "stop_sequence": "</Action>",
        "usage": {"input_tokens": 10, "output_tokens": 10},
    }


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def page(make_snapshot, make_element):
    return make_snapshot(
        make_element(0, "a", "Home", locator="#home"),
        make_element(1, "button", "Start application", locator="#start"),
        make_element(2, "input", label="Full Name", locator="#name", required=True),
    )


@pytest.fixture
def state():
    return SessionState(goal="apply for driver's license", active=True)


def test_parse_response_without_closing_tag():
    parsed = parse_response("<Thought>Fill in the name first</Thought>\n<Action>type(3)")
    assert parsed == ParsedAction(name="type", index=3, thought="Fill in the name first")


def test_parse_response_is_case_insensitive():
    parsed = parse_response("<action>CLICK( 2 )</action>")
    assert parsed.name == "click"
    assert parsed.index == 2
    assert parsed.thought == ""


@pytest.mark.parametrize(
    "raw",
    ["", "I think you should click the button", "<Action>navigate(3)</Action>", "<Action>click(abc)</Action>"],
)
def test_parse_response_rejects_malformed(raw):
    assert parse_response(raw) is None


def test_wait_and_missing_index_mean_no_step(page, state):
    assert parse_response("<Action>wait()</Action>") == ParsedAction("wait", None, "")
    assert step_from_action(parse_response("<Action>wait()</Action>"), page, state) is None
    assert step_from_action(parse_response("<Action>click()</Action>"), page, state) is None


def test_step_from_action_rejects_unknown_index(page, state):
    assert step_from_action(ParsedAction("click", 9, ""), page, state) is None


def test_step_from_action_rejects_used_locator(page, state):
    state.history.append(ActionRecord(1, "click", "#start", "Start application"))
    assert step_from_action(ParsedAction("click", 1, ""), page, state) is None


def test_step_from_action_respects_active_panel(make_snapshot, make_element, state):
    snap = make_snapshot(
        make_element(0, "button", "Send", locator="#send", in_panel=True),
        make_element(1, "button", "Submit", locator="#submit"),
        has_active_panel=True,
    )
    assert step_from_action(ParsedAction("click", 1, ""), snap, state) is None
    assert step_from_action(ParsedAction("click", 0, ""), snap, state).target_locator == "#send"


def test_step_uses_thought_or_synthesized_instruction(page, state):
    step = step_from_action(ParsedAction("type", 2, "Type your full name"), page, state)
    assert step.action == "type"
    assert step.target_locator == "#name"
    assert step.instruction == "Type your full name"

    step = step_from_action(ParsedAction("type", 2, ""), page, state)
    assert step.instruction == "Enter your Full Name here"


def test_prompt_lists_flags_history_and_caps_elements(make_snapshot, make_element, state):
    elements = [make_element(i, "a", f"Link {i}", locator=f"#l{i}") for i in range(60)]
    elements[0] = make_element(0, "input", label="Email", value="ada@example.test", filled=True,
                               required=True, in_panel=True, locator="#email")
    elements[1] = make_element(1, "a", "Far away", in_viewport=False, in_panel=True, locator="#far")
    snap = make_snapshot(*elements, has_active_panel=True)
    state.history.extend(ActionRecord(i, "click", f"#h{i}", f"Old {i}") for i in range(1, 11))

    prompt = build_user_prompt(snap, state)

    assert "Goal: apply for driver's license" in prompt
    assert "A PANEL IS ACTIVE" in prompt
    assert '[0] [PANEL,FILLED,REQUIRED] input label="Email" (input:text) value="ada@example.test"' in prompt
    assert "[1] [PANEL,OFFSCREEN] a" in prompt
    assert "[49]" in prompt
    assert "[50]" not in prompt
    assert "Previous actions (10 total)" in prompt
    assert "Step 2:" not in prompt
    assert "Step 3:" in prompt


@pytest.mark.asyncio
async def test_openai_request_and_success(page, state):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_chat_completion("<Thought>Begin the application</Thought>\n<Action>click(1)"))

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1/chat/completions", api_key="sk-test")
    step = await llm_plan(page, state, config, http_client=_client(handler))

    assert step.target_locator == "#start"
    assert step.action == "click"
    assert step.instruction == "Begin the application"
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["temperature"] == 0
    assert seen["body"]["max_tokens"] == 300
    assert seen["body"]["stop"] == ["</Action>"]
    assert seen["body"]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_custom_provider_omits_stop(page, state):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_chat_completion("<Action>type(2)</Action>"))

    config = LLMConfig(provider="custom", endpoint="https://local.test/v1", api_key="k", model="local-model")
    step = await llm_plan(page, state, config, http_client=_client(handler))

    assert step.target_locator == "#name"
    assert "stop" not in seen["body"]
    assert seen["body"]["model"] == "local-model"


@pytest.mark.asyncio
async def test_anthropic_request_and_success(page, state):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_anthropic_message("<Thought>Name first</Thought><Action>type(2)"))

    config = LLMConfig(provider="anthropic", endpoint="https://anthropic.test", api_key="ak-test")
    step = await llm_plan(page, state, config, http_client=_client(handler))

    assert step.target_locator == "#name"
    assert step.instruction == "Name first"
    assert seen["url"] == "https://anthropic.test/v1/messages"
    assert seen["key"] == "ak-test"
    assert seen["body"]["stop_sequences"] == ["</Action>"]
    assert seen["body"]["temperature"] == 0
    assert "browser navigation assistant" in seen["body"]["system"]


@pytest.mark.asyncio
async def test_server_error_returns_none(page, state):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"error": {"message": "boom"}})

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")
    assert await llm_plan(page, state, config, http_client=_client(handler)) is None
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_malformed_payload_returns_none(page, state):
    def handler(request):
        return httpx.Response(200, json={"id": "x", "object": "chat.completion", "choices": []})

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")
    assert await llm_plan(page, state, config, http_client=_client(handler)) is None


@pytest.mark.asyncio
async def test_wait_answer_returns_none(page, state):
    def handler(request):
        return httpx.Response(200, json=_chat_completion("<Thought>Looks done</Thought><Action>wait()"))

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")
    assert await llm_plan(page, state, config, http_client=_client(handler)) is None


@pytest.mark.asyncio
async def test_timeout_returns_none(page, state):
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json=_chat_completion("<Action>click(1)"))

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")
    planner = LLMPlanner(config, timeout=0.05, http_client=_client(handler))
    try:
        assert await asyncio.wait_for(planner.plan(page, state), timeout=2) is None
    finally:
        await planner.aclose()


@pytest.mark.asyncio
async def test_injected_client_left_open_by_planner(page, state):
    def handler(request):
        return httpx.Response(200, json=_chat_completion("<Action>click(1)"))

    http_client = _client(handler)
    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")

    assert await llm_plan(page, state, config, http_client=http_client) is not None
    assert not http_client.is_closed
    assert await llm_plan(page, state, config, http_client=http_client) is not None
    await http_client.aclose()


@pytest.mark.asyncio
async def test_closed_client_returns_none(page, state):
    http_client = _client(lambda request: httpx.Response(200, json=_chat_completion("<Action>click(1)")))
    await http_client.aclose()

    config = LLMConfig(provider="openai", endpoint="https://llm.test/v1", api_key="sk-test")
    assert await llm_plan(page, state, config, http_client=http_client) is None
