"""阶段检测：根据快照判断当前处于任务流程的哪个阶段

纯函数，只看标题、URL 和前若干个元素的文本，不参考历史。
"""

from typing import Iterable

from .models import (
    PHASE_FORM_FILL,
    PHASE_LOGIN,
    PHASE_NAVIGATION,
    PHASE_SUBMIT_READY,
    PHASE_SUCCESS,
    PageElement,
    PageSnapshot,
)

# 完成页常见词汇
SUCCESS_WORDS = (
    "success",
    "confirmed",
    "confirmation number",
    "receipt",
    "order placed",
    "thank you for",
    "application received",
    "you're all set",
)

# 只扫描前 N 个元素的文本
SUCCESS_SCAN_LIMIT = 20

EMAIL_HINTS = ("email", "e-mail", "username", "user name", "user id", "login")
PASSWORD_HINTS = ("password", "passcode")

# 这些 input 不需要用户填写
NON_FILLABLE_TYPES = ("hidden", "submit", "button", "reset", "image")


def _hint_text(el: PageElement) -> str:
    return " ".join((el.placeholder or "", el.label, el.locator)).lower()


def is_email_like(el: PageElement) -> bool:
    if not el.is_input:
        return False
    if (el.input_type or "").lower() == "email":
        return True
    return any(h in _hint_text(el) for h in EMAIL_HINTS) and not is_password_like(el)


def is_password_like(el: PageElement) -> bool:
    if not el.is_input:
        return False
    if (el.input_type or "").lower() == "password":
        return True
    return any(h in _hint_text(el) for h in PASSWORD_HINTS)


def is_fillable(el: PageElement) -> bool:
    """需要用户输入内容的元素"""
    return el.is_input and (el.input_type or "text").lower() not in NON_FILLABLE_TYPES


def _contains_success_word(texts: Iterable[str]) -> bool:
    for text in texts:
        lowered = text.lower()
        if any(w in lowered for w in SUCCESS_WORDS):
            return True
    return False


def is_success_page(snapshot: PageSnapshot) -> bool:
    texts = [snapshot.title, snapshot.url]
    for el in snapshot.elements[:SUCCESS_SCAN_LIMIT]:
        texts.append(el.text)
        texts.append(el.label)
    return _contains_success_word(texts)


def detect_phase(snapshot: PageSnapshot) -> str:
    """按优先级判断阶段，第一个命中的为准"""
    if is_success_page(snapshot):
        return PHASE_SUCCESS

    elements = snapshot.elements
    if any(is_email_like(el) for el in elements) and any(is_password_like(el) for el in elements):
        return PHASE_LOGIN

    fillable = [el for el in elements if is_fillable(el)]
    if any(not el.filled for el in fillable):
        return PHASE_FORM_FILL
    if any(el.filled for el in fillable):
        return PHASE_SUBMIT_READY

    return PHASE_NAVIGATION
