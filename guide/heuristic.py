"""启发式规划：基于规则给元素打分，选出下一步

不依赖网络，同样的快照 + 同样的会话状态总是得到同样的结果。
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Pattern, Tuple

from .memory import Memory
from .models import (
    PHASE_FORM_FILL,
    PHASE_LOGIN,
    PHASE_SUBMIT_READY,
    GuidanceStep,
    PageElement,
    PageSnapshot,
    SessionState,
)
from .phase import detect_phase, is_email_like, is_fillable, is_password_like

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    ["a", "an", "the", "for", "to", "of", "in", "on", "and", "or", "is", "my", "i", "it", "this", "that", "me", "with"]
)

CTA_WORDS = (
    "apply", "start", "next", "continue", "submit", "search", "book", "confirm", "proceed",
    "sign", "log", "register", "enroll", "add", "create", "send", "save", "checkout", "buy",
    "order", "pay", "get started",
)
PENALTY_WORDS = (
    "logout", "log out", "sign out", "cancel", "dismiss", "close", "no thanks", "maybe later",
    "cookie", "privacy", "terms", "unsubscribe", "advertisement",
)
LOGIN_SUBMIT_WORDS = ("log in", "login", "sign in", "signin", "continue", "next", "submit")
PROGRESS_WORDS = (
    "submit", "continue", "next", "confirm", "proceed", "finish", "done", "save", "apply",
    "pay", "place order", "checkout", "send", "register", "sign up", "complete",
)

PANEL_VETO = -2000
USED_VETO = -1000
REPEAT_PENALTY = 30
MIN_CONFIDENT_SCORE = 10

CLICK_INPUT_TYPES = ("checkbox", "radio", "submit", "button", "file", "reset", "image")

# 按单词开头匹配，避免 "ad" 命中 "address"
_PATTERNS: Dict[str, Pattern] = {
    w: re.compile(r"\b" + re.escape(w))
    for w in CTA_WORDS + PENALTY_WORDS + LOGIN_SUBMIT_WORDS + PROGRESS_WORDS
}


def _has(text: str, word: str) -> bool:
    return _PATTERNS[word].search(text) is not None


def tokenize(text: str) -> List[str]:
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 1 and w not in STOP_WORDS]


def is_clickable(el: PageElement) -> bool:
    if el.tag in ("button", "a") or el.role in ("button", "link"):
        return True
    return el.is_input and (el.input_type or "").lower() in ("submit", "button")


@dataclass(frozen=True)
class _Context:
    keywords: Tuple[str, ...]
    phase: str
    has_panel: bool
    used_locators: FrozenSet[str]
    used_texts: Tuple[str, ...]

    def vetoed(self, el: PageElement) -> bool:
        return (self.has_panel and not el.in_panel) or el.locator in self.used_locators


def _phase_bonus(el: PageElement, phase: str, keyword_hits: int, cta_hits: int) -> int:
    words = f"{el.text} {el.label}".lower()

    if phase == PHASE_LOGIN:
        if is_fillable(el) and el.filled:
            return -20
        if is_email_like(el):
            return 45
        if is_password_like(el):
            return 35
        if is_clickable(el) and any(_has(words, w) for w in LOGIN_SUBMIT_WORDS):
            return 15
        return 0

    if phase == PHASE_FORM_FILL:
        if not is_fillable(el):
            return 0
        if el.filled:
            return -40
        return 100 if el.required else 20

    if phase == PHASE_SUBMIT_READY:
        if is_fillable(el):
            return -30
        if any(_has(words, w) for w in PROGRESS_WORDS):
            return 40
        return 0

    # navigation：关键词和 CTA 占主导
    if is_fillable(el):
        return 0
    return keyword_hits * 10 + cta_hits * 4


def score_element(el: PageElement, ctx: _Context) -> int:
    if ctx.has_panel and not el.in_panel:
        return PANEL_VETO
    if el.locator in ctx.used_locators:
        return USED_VETO

    s = 0
    txt = el.text.lower()
    lbl = el.label.lower()
    ph = (el.placeholder or "").lower()

    if len(el.text) > 3:
        prefix = txt[:20]
        if any(prefix in t.lower() for t in ctx.used_texts):
            s -= REPEAT_PENALTY

    if ctx.has_panel:
        s += 30
    if el.in_viewport:
        s += 5

    keyword_hits = 0
    for k in ctx.keywords:
        if k in txt:
            s += 15
            keyword_hits += 1
        if k in lbl:
            s += 12
            keyword_hits += 1
        if ph and k in ph:
            s += 10

    cta_hits = 0
    for c in CTA_WORDS:
        if _has(txt, c):
            s += 8
            cta_hits += 1
        if _has(lbl, c):
            s += 6
            cta_hits += 1

    for p in PENALTY_WORDS:
        if _has(txt, p):
            s -= 20
        if _has(lbl, p):
            s -= 15

    if el.tag == "button":
        s += 5
    if el.role == "button":
        s += 4
    if el.tag == "a":
        s += 2
    if el.is_input:
        s += 3

    if el.rect.width > 100 and el.rect.height > 30:
        s += 3
    if el.rect.top < 600:
        s += 2

    return s + _phase_bonus(el, ctx.phase, keyword_hits, cta_hits)


def _build_context(snapshot: PageSnapshot, state: SessionState, phase: str) -> _Context:
    memory = Memory(state)
    return _Context(
        keywords=tuple(tokenize(state.goal)),
        phase=phase,
        has_panel=snapshot.has_active_panel,
        used_locators=frozenset(memory.used_locators()),
        used_texts=tuple(memory.used_texts()),
    )


def _rank(snapshot: PageSnapshot, ctx: _Context) -> List[Tuple[int, PageElement]]:
    scored = [(score_element(el, ctx), el) for el in snapshot.elements]
    return sorted(scored, key=lambda item: (-item[0], item[1].index))


def rank_elements(
    snapshot: PageSnapshot, state: SessionState, phase: Optional[str] = None
) -> List[Tuple[int, PageElement]]:
    """按分数降序排列；同分保持快照顺序"""
    return _rank(snapshot, _build_context(snapshot, state, phase or detect_phase(snapshot)))


def _fallback(snapshot: PageSnapshot, ctx: _Context) -> Optional[PageElement]:
    usable = [el for el in snapshot.elements if el.in_viewport and not ctx.vetoed(el)]
    for el in usable:
        if is_fillable(el) and not el.filled:
            return el
    for el in usable:
        words = f"{el.text} {el.label}".lower()
        if is_clickable(el) and not any(_has(words, p) for p in PENALTY_WORDS):
            return el
    return None


def action_for(el: PageElement) -> str:
    if el.tag == "select":
        return "select"
    if el.is_input:
        if (el.input_type or "text").lower() in CLICK_INPUT_TYPES:
            return "click"
        return "type"
    return "click"


def instruction_for(el: PageElement, action: str, phase: Optional[str] = None) -> str:
    name = el.text[:50] or el.label or el.placeholder or "this element"

    if phase == PHASE_LOGIN and action == "type":
        if is_password_like(el):
            return "Enter your password here"
        if is_email_like(el):
            return "Enter your email or username here"
    if phase == PHASE_LOGIN and action == "click" and is_clickable(el):
        return f'Click "{name}" to log in'

    if action == "click":
        return f'Click "{name}"'
    if action == "type":
        return f"Enter your {el.label or el.placeholder or 'information'} here"
    if action == "select":
        return f'Select an option from "{name}"'
    return f'Interact with "{name}"'


def heuristic_plan(
    snapshot: PageSnapshot, state: SessionState, phase: Optional[str] = None
) -> Optional[GuidanceStep]:
    """
    选出下一步。没有足够把握时返回 None，而不是乱猜。
    """
    if not snapshot.elements:
        return None

    phase = phase or detect_phase(snapshot)
    ctx = _build_context(snapshot, state, phase)
    best_score, best = _rank(snapshot, ctx)[0]
    if best_score < MIN_CONFIDENT_SCORE:
        fallback = _fallback(snapshot, ctx)
        if fallback is None:
            logger.debug("没有可信的候选元素 (最高分 %d, phase=%s)", best_score, phase)
            return None
        logger.debug("最高分 %d 低于阈值，使用兜底元素 [%d]", best_score, fallback.index)
        best = fallback

    action = action_for(best)
    return GuidanceStep(
        step_number=state.step,
        action=action,
        target_locator=best.locator,
        text_hint=best.text[:60],
        instruction=instruction_for(best, action, phase),
    )
