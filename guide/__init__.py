"""Web Guide 包：一步一步引导用户在陌生网页上完成目标

包含各个模块：
- models: 数据模型
- phase: 阶段检测
- heuristic: 启发式规划
- planner: LLM 规划
- memory: 历史记录与死循环检测
- store: 状态持久化
- config: 配置
- perception: 页面观察（Playwright）
- controller: 引导展示（Playwright）
- core: 会话编排
"""

from .config import Settings, load_llm_config, load_settings
from .core import GuideSession
from .errors import GuideError, PageUnreachableError, RestrictedPageError
from .heuristic import heuristic_plan
from .memory import Memory
from .models import ActionRecord, GuidanceStep, LLMConfig, PageElement, PageSnapshot, Rect, SessionState
from .phase import detect_phase
from .planner import LLMPlanner, llm_plan
from .store import FileStore, MemoryStore

__all__ = [
    "ActionRecord",
    "FileStore",
    "GuidanceStep",
    "GuideError",
    "GuideSession",
    "LLMConfig",
    "LLMPlanner",
    "Memory",
    "MemoryStore",
    "PageElement",
    "PageSnapshot",
    "PageUnreachableError",
    "Rect",
    "RestrictedPageError",
    "SessionState",
    "Settings",
    "detect_phase",
    "heuristic_plan",
    "llm_plan",
    "load_llm_config",
    "load_settings",
]
