"""
测试公用的快照构造函数和假的页面观察器 / 执行器
"""

from typing import List

import pytest

from guide.config import Settings
from guide.models import PageElement, PageSnapshot, Rect

INPUT_TAGS = ("input", "textarea", "select")


def build_element(index: int, tag: str = "button", text: str = "", **kwargs) -> PageElement:
    fields = dict(
        index=index,
        tag=tag,
        role=kwargs.pop("role", tag),
        text=text,
        label=kwargs.pop("label", ""),
        locator=kwargs.pop("locator", f"#el-{index}"),
        rect=kwargs.pop("rect", Rect(top=100 + index * 40, left=10, width=120, height=36)),
        is_input=kwargs.pop("is_input", tag in INPUT_TAGS),
    )
    fields.update(kwargs)
    return PageElement(**fields)


def build_snapshot(*elements: PageElement, **kwargs) -> PageSnapshot:
    return PageSnapshot(
        url=kwargs.get("url", "https://example.test/start"),
        title=kwargs.get("title", "Example"),
        elements=tuple(elements),
        has_active_panel=kwargs.get("has_active_panel", False),
    )


class FakeObserver:
    """按顺序返回快照（或抛出异常），最后一项重复使用"""

    def __init__(self, *items):
        self.items: List = list(items)
        self.calls = 0

    async def extract(self):
        self.calls += 1
        item = self.items[0] if len(self.items) == 1 else self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeActuator:
    def __init__(self):
        self.shown = []
        self.hidden = 0

    async def show(self, step):
        self.shown.append(step)
        return True

    async def hide(self):
        self.hidden += 1
        return True


@pytest.fixture
def make_element():
    return build_element


@pytest.fixture
def make_snapshot():
    return build_snapshot


@pytest.fixture
def fast_settings(tmp_path):
    return Settings(
        llm_timeout=1.0,
        click_settle=0,
        input_settle=0,
        navigation_settle=0,
        retry_delay=0,
        state_dir=tmp_path,
    )


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def messages():
    return []
