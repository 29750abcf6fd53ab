"""
Web Guide - 基于 Playwright 的网页分步引导

架构说明：
  1. 感知模块 (Perception)   - 提取页面可交互元素，生成快照
  2. 规划模块 (heuristic / planner) - 规则打分，或调用大模型，选出下一步
  3. 执行模块 (Controller)   - 高亮目标元素，等用户自己完成动作
  4. 会话编排 (GuideSession) - 状态机、死循环检测、完成检测

依赖安装：
    pip install -e .
    playwright install chromium

运行示例：
    python web_guide.py "apply for driver's license" --url https://example.com
    python web_guide.py "search flights to Tokyo" --url https://example.com --mode llm

运行时在终端输入命令：skip / rescan / state / stop
"""

import argparse
import asyncio
import logging
from typing import Any, Dict

from playwright.async_api import async_playwright

from guide import GuideSession, FileStore, load_llm_config, load_settings
from guide.controller import Controller
from guide.perception import Perception

COMMANDS = {"skip": "SKIP", "rescan": "RESCAN", "stop": "STOP"}


def print_message(message: Dict[str, Any]):
    """终端版的侧边栏：打印广播消息"""
    kind = message.get("type")
    if kind == "STATE":
        state = message["state"]
        current = state.get("current")
        if current:
            print(f"\n→ Step {current['step_number']}: {current['instruction']}")
            print(f"  ({current['action']} {current['target_locator']})")
        elif state.get("active"):
            print(f"\n… Step {state['step']}: scanning page")
    elif kind == "ERROR":
        print(f"⚠ {message.get('msg')}")
    elif kind == "COMPLETED":
        print("\n✓✓✓ Goal completed ✓✓✓")


async def read_commands(session: GuideSession):
    loop = asyncio.get_running_loop()
    while True:
        line = (await loop.run_in_executor(None, input)).strip().lower()
        if line in COMMANDS:
            await session.handle({"type": COMMANDS[line]})
            if line == "stop":
                return
        elif line == "state":
            state = session.get_state()
            print(f"step={state.step} active={state.active} completed={state.completed} history={len(state.history)}")
        elif line:
            print(f"未知命令: {line}（可用: skip / rescan / state / stop）")


async def run_guide(goal: str, start_url: str, mode: str, headless: bool = False):
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    llm_config = load_llm_config()
    if mode == "llm" and llm_config is None:
        print("⚠ 未设置 GUIDE_LLM_API_KEY / OPENAI_API_KEY，使用启发式规划")

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        page = await browser.new_page()

        perception = Perception(page)
        controller = Controller(page)
        session = GuideSession(
            perception,
            controller,
            store=FileStore(settings.state_dir),
            settings=settings,
            llm_config=llm_config,
        )
        session.subscribe(print_message)
        await controller.attach(session.handle)

        await page.goto(start_url)
        await page.wait_for_load_state("domcontentloaded")

        result = await session.handle({"type": "START", "goal": goal, "mode": mode})
        if not result.get("ok"):
            print(f"❌ 无法开始: {result.get('error')}")
        else:
            print("✓ 引导已开始（命令: skip / rescan / state / stop）")
            await read_commands(session)

        await session.close()
        await browser.close()


def main():
    parser = argparse.ArgumentParser(description="Step-by-step guidance on any web page")
    parser.add_argument("goal", help="what you want to do, e.g. \"apply for driver's license\"")
    parser.add_argument("--url", required=True, help="page to start from")
    parser.add_argument("--mode", choices=("heuristic", "llm"), default="heuristic")
    parser.add_argument("--headless", action="store_true")
    args = parser.parse_args()

    asyncio.run(run_guide(args.goal, args.url, args.mode, args.headless))


if __name__ == "__main__":
    main()
