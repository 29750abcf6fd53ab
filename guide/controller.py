"""执行模块：在页面上高亮目标元素，并检测用户是否完成了动作

引擎不会替用户点击或输入，这里只负责展示引导和回报结果。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page

from .errors import PageUnreachableError
from .models import GuidanceStep

logger = logging.getLogger(__name__)

BINDING_NAME = "__guideReport"
NOTICE_TARGET_MISSING = "Could not find the target element. Click Skip to try another."

MessageHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

SHOW_JS = """
(step) => {
    const report = (msg) => window.__guideReport && window.__guideReport(msg);
    const visible = (el) => {
        const r = el.getBoundingClientRect();
        return r.width > 0 && r.height > 0;
    };

    if (window.__guideCleanup) window.__guideCleanup();

    // 1. 直接用 locator；2. 退回到文本 / aria-label 匹配
    let target = null;
    try { target = document.querySelector(step.target_locator); } catch (e) { target = null; }

    const hint = (step.text_hint || '').toLowerCase().trim();
    if (!target && hint) {
        const all = Array.from(document.querySelectorAll(
            'a[href], button, input, textarea, select, [role="button"], [role="link"], [tabindex]'
        )).filter(visible);
        target = all.find(el => (el.textContent || '').toLowerCase().trim() === hint)
            || (hint.length > 3 ? all.find(el => (el.textContent || '').toLowerCase().includes(hint)) : null)
            || all.find(el => {
                const aria = (el.getAttribute('aria-label') || '').toLowerCase();
                return aria && (aria.includes(hint) || hint.includes(aria));
            })
            || null;
    }
    if (!target) return false;

    let host = document.getElementById('__guide-overlay');
    if (!host) {
        host = document.createElement('div');
        host.id = '__guide-overlay';
        Object.assign(host.style, {
            position: 'fixed', top: '0', left: '0', width: '0', height: '0',
            zIndex: '2147483647', pointerEvents: 'none',
        });
        document.documentElement.appendChild(host);
        host.attachShadow({ mode: 'open' });
    }
    const root = host.shadowRoot;
    root.innerHTML = `
        <style>
            .box { position: fixed; border: 3px solid #6366f1; border-radius: 6px;
                   box-shadow: 0 0 0 4000px rgba(0,0,0,0.35); pointer-events: none; }
            .card { position: fixed; background: #fff; border: 2px solid #6366f1; border-radius: 12px;
                    padding: 12px 16px; max-width: 280px; font-family: system-ui, sans-serif;
                    pointer-events: auto; }
            .num { font-size: 11px; font-weight: 700; color: #6366f1; text-transform: uppercase; }
            .text { font-size: 14px; color: #1e1e2e; margin: 4px 0 8px; }
            button { font-size: 12px; padding: 6px 14px; background: #6366f1; color: #fff;
                     border: none; border-radius: 6px; cursor: pointer; }
        </style>`;

    if (target.scrollIntoView) target.scrollIntoView({ block: 'center' });
    const rect = target.getBoundingClientRect();

    const box = document.createElement('div');
    box.className = 'box';
    Object.assign(box.style, {
        top: `${rect.top - 4}px`, left: `${rect.left - 4}px`,
        width: `${rect.width + 8}px`, height: `${rect.height + 8}px`,
    });
    root.appendChild(box);

    const card = document.createElement('div');
    card.className = 'card';
    const num = document.createElement('div');
    num.className = 'num';
    num.textContent = `Step ${step.step_number}`;
    const text = document.createElement('div');
    text.className = 'text';
    text.textContent = step.instruction;
    const done = document.createElement('button');
    done.textContent = 'Done';
    card.append(num, text, done);

    const below = window.innerHeight - rect.bottom > 132;
    card.style.top = `${below ? rect.bottom + 12 : Math.max(12, rect.top - 132)}px`;
    card.style.left = `${Math.max(12, Math.min(rect.left, window.innerWidth - 292))}px`;
    root.appendChild(card);

    const cleanups = [];
    const finish = (action) => {
        window.__guideCleanup();
        report({ type: 'ACTION_DONE', action });
    };
    window.__guideCleanup = () => {
        cleanups.forEach(fn => fn());
        cleanups.length = 0;
        root.innerHTML = '';
    };

    done.addEventListener('click', () => finish(step.action));

    if (step.action === 'click') {
        const onClick = (e) => { if (target.contains(e.target)) finish('click'); };
        document.addEventListener('click', onClick, true);
        cleanups.push(() => document.removeEventListener('click', onClick, true));
    } else if (step.action === 'type') {
        let timer = null;
        const onInput = () => {
            clearTimeout(timer);
            timer = setTimeout(() => {
                if (target.value || target.textContent) finish('type');
            }, 1000);
        };
        target.addEventListener('input', onInput);
        cleanups.push(() => { target.removeEventListener('input', onInput); clearTimeout(timer); });
    } else if (step.action === 'select') {
        const onChange = () => finish('select');
        target.addEventListener('change', onChange);
        cleanups.push(() => target.removeEventListener('change', onChange));
    }
    return true;
}
"""

HIDE_JS = """
() => {
    if (window.__guideCleanup) window.__guideCleanup();
    return true;
}
"""


class Controller:
    """执行模块：展示引导，回报用户动作"""

    def __init__(self, page: Page):
        self.page = page
        self._on_message: Optional[MessageHandler] = None
        self._tasks: Set[asyncio.Task] = set()

    async def attach(self, on_message: MessageHandler):
        """
        注册页面回调。on_message 会收到 ACTION_DONE / ERROR / NAV_CHANGE 消息。
        """
        self._on_message = on_message
        await self.page.expose_binding(BINDING_NAME, self._report)
        self.page.on("framenavigated", self._on_navigated)

    async def _report(self, source, message: Dict[str, Any]):
        if self._on_message is not None and isinstance(message, dict):
            await self._on_message(message)

    def _on_navigated(self, frame: Frame):
        if frame != self.page.main_frame or self._on_message is None:
            return
        task = asyncio.create_task(self._on_message({"type": "NAV_CHANGE", "url": frame.url}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def show(self, step: GuidanceStep) -> bool:
        try:
            found = await self.page.evaluate(SHOW_JS, step.to_dict())
        except PlaywrightError as e:
            # 多半是页面正在跳转，跳转完成后会重新规划
            logger.warning("展示引导失败: %s", e)
            return False

        if not found:
            logger.info("找不到目标元素: %s (%r)", step.target_locator, step.text_hint)
            if self._on_message is not None:
                await self._on_message({"type": "ERROR", "msg": NOTICE_TARGET_MISSING})
            return False
        return True

    async def hide(self) -> bool:
        try:
            return bool(await self.page.evaluate(HIDE_JS))
        except PlaywrightError as e:
            raise PageUnreachableError(str(e)) from e
