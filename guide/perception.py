"""感知模块：从页面提取可交互元素，生成 PageSnapshot"""

import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .errors import PageUnreachableError, RestrictedPageError
from .models import PageSnapshot

logger = logging.getLogger(__name__)

RESTRICTED_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "edge://",
    "about:",
    "chrome-search://",
    "devtools://",
)

MAX_ELEMENTS = 150

EXTRACT_JS = """
(maxElements) => {
    const INTERACTIVE = [
        'a[href]', 'button', 'input', 'textarea', 'select', 'summary',
        '[role="button"]', '[role="link"]', '[role="tab"]', '[role="menuitem"]',
        '[role="option"]', '[role="checkbox"]', '[role="radio"]', '[role="switch"]',
        '[role="combobox"]', '[role="searchbox"]', '[role="textbox"]',
        '[tabindex]:not([tabindex="-1"])', '[contenteditable="true"]',
    ].join(', ');

    const isVisible = (el) => {
        let cur = el;
        while (cur && cur !== document.documentElement) {
            const style = window.getComputedStyle(cur);
            if (style.display === 'none') return false;
            if (style.visibility === 'hidden') return false;
            if (parseFloat(style.opacity) === 0) return false;
            cur = cur.parentElement;
        }
        return true;
    };

    const inViewport = (rect) =>
        rect.bottom > 0 && rect.top < window.innerHeight &&
        rect.right > 0 && rect.left < window.innerWidth;

    // 活动面板：打开的 dialog，或者焦点所在的表单区域（如邮件撰写框）
    const findActivePanel = () => {
        const dialog = document.querySelector('dialog[open], [role="dialog"][aria-modal="true"]');
        if (dialog && dialog.getBoundingClientRect().width > 50) return dialog;

        const active = document.activeElement;
        if (!active || active === document.body || active === document.documentElement) return null;

        let best = null;
        let cur = active.parentElement;
        let depth = 0;
        while (cur && cur !== document.body && depth < 15) {
            const inputs = cur.querySelectorAll('input, textarea, select, [contenteditable="true"]').length;
            const buttons = cur.querySelectorAll('button, [role="button"], a[href]').length;
            if (inputs >= 1 && buttons >= 1 && inputs + buttons >= 3) {
                best = cur;
                const rect = cur.getBoundingClientRect();
                if (rect.width * rect.height < window.innerWidth * window.innerHeight * 0.8) break;
            }
            cur = cur.parentElement;
            depth += 1;
        }
        return best;
    };

    const buildLocator = (el) => {
        if (el.id) return '#' + CSS.escape(el.id);
        const testId = el.getAttribute('data-testid');
        if (testId) return `[data-testid="${CSS.escape(testId)}"]`;
        const aria = el.getAttribute('aria-label');
        if (aria) return `[aria-label="${CSS.escape(aria)}"]`;
        const name = el.getAttribute('name');
        if (name) return `[name="${CSS.escape(name)}"]`;

        const path = [];
        let cur = el;
        while (cur && cur !== document.documentElement && path.length < 5) {
            if (cur.id) {
                path.unshift('#' + CSS.escape(cur.id));
                break;
            }
            let seg = cur.tagName.toLowerCase();
            const parent = cur.parentElement;
            if (parent) {
                const same = Array.from(parent.children).filter(c => c.tagName === cur.tagName);
                if (same.length > 1) seg += `:nth-of-type(${same.indexOf(cur) + 1})`;
            }
            path.unshift(seg);
            cur = parent;
        }
        return path.join(' > ');
    };

    const getText = (el) => {
        let text = '';
        for (const child of el.childNodes) {
            if (child.nodeType === Node.TEXT_NODE) text += child.textContent || '';
        }
        text = text.trim().replace(/\\s+/g, ' ');
        if (!text) text = (el.textContent || '').trim().replace(/\\s+/g, ' ');
        return text.slice(0, 100);
    };

    const getLabel = (el) => {
        const aria = el.getAttribute('aria-label');
        if (aria) return aria;
        const labelledBy = el.getAttribute('aria-labelledby');
        if (labelledBy) {
            const ref = document.getElementById(labelledBy);
            if (ref) return (ref.textContent || '').trim().slice(0, 80);
        }
        if (el.id) {
            const ref = document.querySelector(`label[for="${CSS.escape(el.id)}"]`);
            if (ref) return (ref.textContent || '').trim().slice(0, 80);
        }
        const wrap = el.closest('label');
        if (wrap) return (wrap.textContent || '').trim().slice(0, 80);
        return el.getAttribute('title') || '';
    };

    const panel = findActivePanel();
    const root = panel || document;
    const seen = new Set();
    const raw = [];

    for (const el of root.querySelectorAll(INTERACTIVE)) {
        if (seen.has(el)) continue;
        const rect = el.getBoundingClientRect();
        if (rect.width < 5 || rect.height < 5) continue;
        if (!isVisible(el)) continue;
        if (el.tagName === 'INPUT' && (el.getAttribute('type') || '').toLowerCase() === 'hidden') continue;

        // 父子都可交互时保留子元素
        const parent = el.parentElement && el.parentElement.closest(INTERACTIVE);
        if (parent && seen.has(parent)) {
            seen.delete(parent);
            const i = raw.findIndex(r => r.el === parent);
            if (i >= 0) raw.splice(i, 1);
        }
        seen.add(el);

        if (rect.top > window.innerHeight * 3) continue;
        raw.push({ el, rect, viewport: inViewport(rect), inPanel: panel ? panel.contains(el) : false });
    }

    raw.sort((a, b) => {
        if (a.inPanel !== b.inPanel) return a.inPanel ? -1 : 1;
        if (a.viewport !== b.viewport) return a.viewport ? -1 : 1;
        return a.rect.top - b.rect.top;
    });

    const elements = raw.slice(0, maxElements).map((item, index) => {
        const { el, rect } = item;
        const tag = el.tagName.toLowerCase();
        const inputType = el.getAttribute('type');
        const editable = el.getAttribute('contenteditable') === 'true';
        const isInput = ['input', 'textarea', 'select'].includes(tag) || editable;
        let value = null;
        let filled = false;
        if (isInput) {
            const kind = (inputType || '').toLowerCase();
            if (kind === 'checkbox' || kind === 'radio') {
                filled = !!el.checked;
            } else {
                value = editable ? (el.textContent || '') : (el.value || '');
                filled = value.trim().length > 0;
            }
        }
        return {
            index,
            tag,
            role: el.getAttribute('role') || tag,
            text: getText(el),
            label: getLabel(el),
            locator: buildLocator(el),
            rect: {
                top: rect.top + window.scrollY,
                left: rect.left + window.scrollX,
                width: rect.width,
                height: rect.height,
            },
            is_input: isInput,
            input_type: inputType,
            placeholder: el.getAttribute('placeholder'),
            value: value ? value.slice(0, 100) : value,
            required: !!el.required || el.getAttribute('aria-required') === 'true',
            filled,
            in_viewport: item.viewport,
            in_panel: item.inPanel,
        };
    });

    return {
        url: location.href,
        title: document.title,
        elements,
        has_active_panel: panel !== null,
    };
}
"""


def is_restricted_url(url: Optional[str]) -> bool:
    if not url:
        return True
    return url.startswith(RESTRICTED_PREFIXES)


class Perception:
    """
    感知模块：页面观察器。

    每次 extract() 都返回一份新的快照；活动面板存在时只提取面板内的元素。
    """

    def __init__(self, page: Page, max_elements: int = MAX_ELEMENTS):
        self.page = page
        self.max_elements = max_elements

    async def extract(self) -> PageSnapshot:
        url = self.page.url
        if is_restricted_url(url):
            raise RestrictedPageError(url)

        try:
            result = await self.page.evaluate(EXTRACT_JS, self.max_elements)
        except PlaywrightError as e:
            raise PageUnreachableError(str(e)) from e

        snapshot = PageSnapshot.from_dict(result)
        logger.debug(
            "提取 %d 个可交互元素 (panel=%s)", len(snapshot.elements), snapshot.has_active_panel
        )
        return snapshot
