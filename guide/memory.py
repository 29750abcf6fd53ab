"""记忆模块：会话历史的读写与死循环检测"""

from typing import List, Optional, Set

from .models import ActionRecord, GuidanceStep, SessionState


class Memory:
    """包装 SessionState.history，历史只追加不改写"""

    def __init__(self, state: SessionState):
        self.state = state

    @property
    def history(self) -> List[ActionRecord]:
        return self.state.history

    def record(self, action: Optional[str] = None) -> Optional[ActionRecord]:
        """
        关闭当前步骤：写入历史（如果有 current），step +1，清空 current。
        action 为空时沿用 current 自己的动作类型（跳过时）。
        """
        rec = None
        current = self.state.current
        if current is not None:
            rec = ActionRecord(
                step=self.state.step,
                action=action or current.action,
                target_locator=current.target_locator,
                text=current.text_hint,
            )
            self.state.history.append(rec)
        self.state.step += 1
        self.state.current = None
        return rec

    def used_locators(self) -> Set[str]:
        return {rec.target_locator for rec in self.history}

    def used_texts(self, min_length: int = 4) -> List[str]:
        return [rec.text for rec in self.history if len(rec.text) >= min_length]

    def is_stuck(self, candidate: GuidanceStep, window: int = 3, min_hint: int = 4) -> bool:
        """最近 window 条记录全部指向同一目标，或全部是同一段较长的文本"""
        recent = self.history[-window:]
        if len(recent) < window:
            return False
        same_locator = all(r.target_locator == candidate.target_locator for r in recent)
        # 文本过短（含空）时不参与判断
        hint = candidate.text_hint.strip()
        same_text = len(hint) >= min_hint and all(r.text == candidate.text_hint for r in recent)
        return same_locator or same_text

    def format_history(self, last_n: int = 8) -> str:
        """格式化历史记录，用于 LLM 提示词"""
        if not self.history:
            return "(none yet)"

        lines = []
        for rec in self.history[-last_n:]:
            lines.append(f'Step {rec.step}: {rec.action} on "{rec.text}" [{rec.target_locator}]')
        return "\n".join(lines)
