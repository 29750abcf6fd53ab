"""配置：从环境变量（以及 .env 文件）读取"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import LLM_PROVIDERS, LLMConfig


def _number_env(name: str, default, cast=float):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"环境变量 {name} 必须是数字，当前为 {raw!r}") from None


@dataclass
class Settings:
    """会话编排用到的时间和阈值（单位：秒）"""
    llm_timeout: float = 15.0
    # 点击后页面可能开始跳转，等久一点
    click_settle: float = 0.5
    input_settle: float = 0.1
    navigation_settle: float = 0.6
    retry_delay: float = 1.0
    stuck_window: int = 3
    min_stuck_hint: int = 4
    state_dir: Path = field(default_factory=lambda: Path.home() / ".web_guide")
    log_level: str = "INFO"

    def settle_delay(self, action: str) -> float:
        return self.click_settle if action == "click" else self.input_settle


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()
    state_dir = os.getenv("GUIDE_STATE_DIR")
    return Settings(
        llm_timeout=_number_env("GUIDE_LLM_TIMEOUT", 15.0),
        click_settle=_number_env("GUIDE_CLICK_SETTLE", 0.5),
        input_settle=_number_env("GUIDE_INPUT_SETTLE", 0.1),
        navigation_settle=_number_env("GUIDE_NAVIGATION_SETTLE", 0.6),
        retry_delay=_number_env("GUIDE_RETRY_DELAY", 1.0),
        stuck_window=_number_env("GUIDE_STUCK_WINDOW", 3, int),
        min_stuck_hint=_number_env("GUIDE_MIN_STUCK_HINT", 4, int),
        state_dir=Path(state_dir).expanduser() if state_dir else Path.home() / ".web_guide",
        log_level=os.getenv("GUIDE_LOG_LEVEL", "INFO").upper(),
    )


def env_api_key(provider: str) -> str:
    key = os.getenv("GUIDE_LLM_API_KEY")
    if key:
        return key
    if provider == "anthropic":
        return os.getenv("ANTHROPIC_API_KEY", "")
    return os.getenv("OPENAI_API_KEY", "")


def load_llm_config(dotenv: bool = True) -> Optional[LLMConfig]:
    """
    没有 API Key 时返回 None，llm 模式会退化为纯启发式。
    """
    if dotenv:
        load_dotenv()
    provider = os.getenv("GUIDE_LLM_PROVIDER", "openai").lower()
    if provider not in LLM_PROVIDERS:
        raise ValueError(f"不支持的 GUIDE_LLM_PROVIDER: {provider}，可选 {', '.join(LLM_PROVIDERS)}")

    api_key = env_api_key(provider)
    if not api_key:
        return None

    model = os.getenv("GUIDE_LLM_MODEL", "")
    if not model and provider != "anthropic":
        model = os.getenv("OPENAI_MODEL", "")
    return LLMConfig(
        provider=provider,
        endpoint=os.getenv("GUIDE_LLM_ENDPOINT", ""),
        api_key=api_key,
        model=model,
    )
