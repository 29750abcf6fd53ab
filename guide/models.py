"""数据模型定义"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# 动作类型
ACTION_TYPES = ("click", "type", "select", "scroll", "wait")

# 规划模式
MODES = ("heuristic", "llm")

# 页面阶段
PHASE_SUCCESS = "success"
PHASE_LOGIN = "login"
PHASE_FORM_FILL = "form-fill"
PHASE_SUBMIT_READY = "submit-ready"
PHASE_NAVIGATION = "navigation"

LLM_PROVIDERS = ("openai", "anthropic", "custom")


@dataclass(frozen=True)
class Rect:
    """元素几何位置（相对文档）"""
    top: float = 0.0
    left: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class PageElement:
    """快照中的单个可交互元素"""
    index: int
    tag: str
    role: str
    text: str
    label: str
    locator: str
    rect: Rect = field(default_factory=Rect)
    is_input: bool = False
    input_type: Optional[str] = None
    placeholder: Optional[str] = None
    value: Optional[str] = None
    required: bool = False
    filled: bool = False
    in_viewport: bool = True
    in_panel: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PageElement":
        rect = raw.get("rect") or {}
        value = raw.get("value")
        return cls(
            index=int(raw["index"]),
            tag=str(raw.get("tag") or "").lower(),
            role=str(raw.get("role") or raw.get("tag") or "").lower(),
            text=str(raw.get("text") or ""),
            label=str(raw.get("label") or ""),
            locator=str(raw.get("locator") or ""),
            rect=Rect(
                top=float(rect.get("top") or 0),
                left=float(rect.get("left") or 0),
                width=float(rect.get("width") or 0),
                height=float(rect.get("height") or 0),
            ),
            is_input=bool(raw.get("is_input")),
            input_type=raw.get("input_type") or None,
            placeholder=raw.get("placeholder") or None,
            value=value,
            required=bool(raw.get("required")),
            filled=bool(raw.get("filled", bool(value))),
            in_viewport=bool(raw.get("in_viewport", True)),
            in_panel=bool(raw.get("in_panel")),
        )


@dataclass(frozen=True)
class PageSnapshot:
    """一次页面观察的结果，创建后不再修改"""
    url: str
    title: str
    elements: Tuple[PageElement, ...] = ()
    has_active_panel: bool = False

    def element(self, index: int) -> Optional[PageElement]:
        return next((el for el in self.elements if el.index == index), None)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PageSnapshot":
        return cls(
            url=str(raw.get("url") or ""),
            title=str(raw.get("title") or ""),
            elements=tuple(PageElement.from_dict(item) for item in raw.get("elements") or []),
            has_active_panel=bool(raw.get("has_active_panel")),
        )


@dataclass(frozen=True)
class GuidanceStep:
    """引擎输出的一步引导"""
    step_number: int
    action: str  # click|type|select|scroll|wait
    target_locator: str
    text_hint: str
    instruction: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "GuidanceStep":
        return cls(
            step_number=int(raw.get("step_number") or 1),
            action=str(raw.get("action") or "click"),
            target_locator=str(raw.get("target_locator") or ""),
            text_hint=str(raw.get("text_hint") or ""),
            instruction=str(raw.get("instruction") or ""),
        )


@dataclass(frozen=True)
class ActionRecord:
    """单条已完成（或已跳过）的历史记录"""
    step: int
    action: str
    target_locator: str
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ActionRecord":
        return cls(
            step=int(raw.get("step") or 0),
            action=str(raw.get("action") or "click"),
            target_locator=str(raw.get("target_locator") or ""),
            text=str(raw.get("text") or ""),
        )


@dataclass
class SessionState:
    """会话状态：引擎唯一持有的可变对象"""
    goal: str = ""
    active: bool = False
    completed: bool = False
    step: int = 1
    current: Optional[GuidanceStep] = None
    history: List[ActionRecord] = field(default_factory=list)
    mode: str = "heuristic"  # heuristic|llm

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "active": self.active,
            "completed": self.completed,
            "step": self.step,
            "current": self.current.to_dict() if self.current else None,
            "history": [rec.to_dict() for rec in self.history],
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SessionState":
        current = raw.get("current")
        mode = raw.get("mode")
        return cls(
            goal=str(raw.get("goal") or ""),
            active=bool(raw.get("active")),
            completed=bool(raw.get("completed")),
            step=max(1, int(raw.get("step") or 1)),
            current=GuidanceStep.from_dict(current) if isinstance(current, dict) else None,
            history=[ActionRecord.from_dict(item) for item in raw.get("history") or [] if isinstance(item, dict)],
            mode=mode if mode in MODES else "heuristic",
        )

    def copy(self) -> "SessionState":
        """给外部（UI / 执行器）的独立副本"""
        return SessionState.from_dict(self.to_dict())


@dataclass
class LLMConfig:
    """LLM 连接配置；api_key 不参与 repr，也不落盘"""
    provider: str = "openai"  # openai|anthropic|custom
    endpoint: str = ""
    api_key: str = field(default="", repr=False)
    model: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider, "endpoint": self.endpoint, "model": self.model}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], api_key: str = "") -> "LLMConfig":
        provider = raw.get("provider")
        return cls(
            provider=provider if provider in LLM_PROVIDERS else "openai",
            endpoint=str(raw.get("endpoint") or ""),
            api_key=str(raw.get("api_key") or api_key or ""),
            model=str(raw.get("model") or ""),
        )
