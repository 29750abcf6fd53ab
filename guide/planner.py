"""规划模块：调用 LLM 决策下一步，失败时交给启发式规划"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from .heuristic import instruction_for
from .memory import Memory
from .models import GuidanceStep, LLMConfig, PageSnapshot, SessionState
from .phase import detect_phase

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
MAX_ELEMENTS = 50
MAX_HISTORY = 8
MAX_OUTPUT_TOKENS = 300
STOP_SEQUENCE = "</Action>"

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
}

SYSTEM_PROMPT = """You are a browser navigation assistant that helps users accomplish tasks step-by-step.

You will receive:
1. The user's goal
2. The current page URL and title
3. Whether a focused panel (dialog, modal, compose window) is currently active
4. A numbered list of interactive elements on the page
5. Previous actions already taken

Your job: pick the SINGLE best next action to make progress toward the goal.

Available actions:
- click(id) - click the element with the given id
- type(id) - focus the input with the given id (the user will type)
- select(id) - focus the dropdown with the given id (the user will select)
- wait() - no clear action is available

Rules:
- Pick exactly ONE action per response
- Use the element id number from the list
- NEVER repeat an action on an element listed in "Previous actions"
- If a panel is active you MUST pick an element marked PANEL; everything else is covered and not clickable
- Fill empty inputs (especially REQUIRED ones) before clicking submit
- If the goal seems complete or you are stuck, use wait()

Response format:
<Thought>Brief reasoning about what to do next</Thought>
<Action>click(5)</Action>"""

_ACTION_RE = re.compile(r"<Action>\s*(\w+)\s*\(\s*(\d*)\s*\)\s*(?:</Action>|$)", re.IGNORECASE)
_THOUGHT_RE = re.compile(r"<Thought>(.*?)</Thought>", re.IGNORECASE | re.DOTALL)

PLANNED_ACTIONS = ("click", "type", "select")


@dataclass(frozen=True)
class ParsedAction:
    """从模型回复中解出的动作"""
    name: str
    index: Optional[int]
    thought: str


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def format_elements(snapshot: PageSnapshot, limit: int = MAX_ELEMENTS) -> str:
    lines = []
    for el in snapshot.elements[:limit]:
        parts = [f"[{el.index}]"]

        flags = []
        if el.in_panel:
            flags.append("PANEL")
        if not el.in_viewport:
            flags.append("OFFSCREEN")
        if el.filled:
            flags.append("FILLED")
        if el.required:
            flags.append("REQUIRED")
        if flags:
            parts.append(f"[{','.join(flags)}]")

        parts.append(el.tag)
        if el.role and el.role != el.tag:
            parts.append(f'role="{el.role}"')
        if el.text:
            parts.append(f'"{_clip(el.text, 60)}"')
        if el.label:
            parts.append(f'label="{_clip(el.label, 60)}"')
        if el.placeholder:
            parts.append(f'placeholder="{_clip(el.placeholder, 40)}"')
        if el.is_input:
            parts.append(f"(input:{el.input_type or 'text'})")
        if el.value:
            parts.append(f'value="{_clip(el.value, 30)}"')
        lines.append(" ".join(parts))
    return "\n".join(lines)


def build_user_prompt(snapshot: PageSnapshot, state: SessionState) -> str:
    memory = Memory(state)
    panel_note = ""
    if snapshot.has_active_panel:
        panel_note = (
            "\nA PANEL IS ACTIVE. You MUST pick an element marked PANEL. "
            "Other elements are covered and not clickable."
        )

    return (
        f"Goal: {state.goal}\n\n"
        f"Current URL: {snapshot.url}\n"
        f"Page title: {snapshot.title}{panel_note}\n\n"
        f"Previous actions ({len(state.history)} total):\n"
        f"{memory.format_history(MAX_HISTORY)}\n\n"
        f"Interactive elements on page ({len(snapshot.elements)} total):\n"
        f"{format_elements(snapshot)}\n\n"
        "What is the single best next action?"
    )


def parse_response(raw: str) -> Optional[ParsedAction]:
    """
    解析 <Thought>...</Thought><Action>name(id)</Action>。
    结束标签可能被 stop sequence 截掉，缺失时也接受。
    任何不符合格式的回复都返回 None。
    """
    if not raw:
        return None
    match = _ACTION_RE.search(raw)
    if not match:
        return None

    name = match.group(1).lower()
    if name not in PLANNED_ACTIONS + ("wait",):
        return None
    index = int(match.group(2)) if match.group(2) else None

    thought_match = _THOUGHT_RE.search(raw)
    thought = thought_match.group(1).strip() if thought_match else ""
    return ParsedAction(name=name, index=index, thought=thought)


def step_from_action(
    parsed: Optional[ParsedAction], snapshot: PageSnapshot, state: SessionState
) -> Optional[GuidanceStep]:
    """把解析结果落到当前快照上；不可用的动作一律视为没有下一步"""
    if parsed is None or parsed.name == "wait" or parsed.index is None:
        return None

    el = snapshot.element(parsed.index)
    if el is None:
        logger.info("LLM 选择的元素 [%d] 不在当前快照中", parsed.index)
        return None
    if snapshot.has_active_panel and not el.in_panel:
        logger.info("LLM 选择的元素 [%d] 在活动面板之外", parsed.index)
        return None
    if el.locator in Memory(state).used_locators():
        logger.info("LLM 重复选择了已操作过的元素 [%d]", parsed.index)
        return None

    return GuidanceStep(
        step_number=state.step,
        action=parsed.name,
        target_locator=el.locator,
        text_hint=el.text[:60],
        instruction=parsed.thought or instruction_for(el, parsed.name, detect_phase(snapshot)),
    )


def _base_url(config: LLMConfig) -> Optional[str]:
    endpoint = config.endpoint.strip().rstrip("/")
    if not endpoint:
        return None
    for suffix in ("/chat/completions", "/v1/messages"):
        if endpoint.endswith(suffix):
            return endpoint[: -len(suffix)]
    return endpoint


class LLMPlanner:
    """规划模块：调用 LLM 决策下一步"""

    def __init__(
        self,
        config: LLMConfig,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.http_client = http_client
        self._client = None

    @property
    def model(self) -> str:
        return self.config.model or DEFAULT_MODELS.get(self.config.provider, "")

    def _get_client(self):
        if self._client is None:
            kwargs = dict(
                api_key=self.config.api_key,
                base_url=_base_url(self.config),
                timeout=self.timeout,
                max_retries=0,
            )
            if self.http_client is not None:
                kwargs["http_client"] = self.http_client
            if self.config.provider == "anthropic":
                self._client = AsyncAnthropic(**kwargs)
            else:
                self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def _complete(self, user_prompt: str) -> str:
        client = self._get_client()

        if self.config.provider == "anthropic":
            response = await client.messages.create(
                model=self.model,
                max_tokens=MAX_OUTPUT_TOKENS,
                temperature=0,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_prompt}],
                stop_sequences=[STOP_SEQUENCE],
            )
            return response.content[0].text

        kwargs = dict(
            model=self.model,
            temperature=0,
            max_tokens=MAX_OUTPUT_TOKENS,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        )
        # 兼容接口不一定支持 stop
        if self.config.provider == "openai":
            kwargs["stop"] = [STOP_SEQUENCE]
        response = await client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    async def plan(self, snapshot: PageSnapshot, state: SessionState) -> Optional[GuidanceStep]:
        """
        根据目标 + 快照 + 历史，输出下一步。
        超时、网络错误、格式错误都返回 None，由调用方回退到启发式规划。
        """
        user_prompt = build_user_prompt(snapshot, state)
        try:
            raw = await asyncio.wait_for(self._complete(user_prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.info("LLM 请求超时 (%.0fs)", self.timeout)
            return None
        except (openai.OpenAIError, anthropic.AnthropicError) as e:
            logger.warning("LLM 请求失败: %s", type(e).__name__)
            return None
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            logger.warning("LLM 返回格式异常: %s", e)
            return None
        except (httpx.HTTPError, RuntimeError) as e:
            # 传输层错误，例如注入的 http_client 已被关闭
            logger.warning("LLM 传输失败: %s", e)
            return None

        logger.debug("LLM 原始输出: %s", raw)
        step = step_from_action(parse_response(raw), snapshot, state)
        if step is None:
            logger.info("无法从 LLM 输出中得到可用动作")
        return step

    async def aclose(self):
        """注入的 http_client 由调用方负责关闭，这里只释放自己创建的连接"""
        if self._client is not None and self.http_client is None:
            await self._client.close()
        self._client = None


async def llm_plan(
    snapshot: PageSnapshot,
    state: SessionState,
    config: LLMConfig,
    timeout: float = DEFAULT_TIMEOUT,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Optional[GuidanceStep]:
    """一次性调用：用完即关闭客户端"""
    planner = LLMPlanner(config, timeout=timeout, http_client=http_client)
    try:
        return await planner.plan(snapshot, state)
    finally:
        await planner.aclose()
