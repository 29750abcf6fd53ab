"""会话编排：状态机、规划调度、死循环检测和消息分发"""

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

import httpx

from .config import Settings, env_api_key
from .errors import PageUnreachableError, RestrictedPageError
from .heuristic import heuristic_plan
from .memory import Memory
from .models import MODES, PHASE_SUCCESS, GuidanceStep, LLMConfig, PageSnapshot, SessionState
from .phase import detect_phase
from .planner import LLMPlanner
from .store import LLM_KEY, STATE_KEY, MemoryStore, StateStore

logger = logging.getLogger(__name__)

NOTICE_NO_STEP = 'No clear next step found. Try "Rescan" or scroll to reveal more elements.'
NOTICE_STUCK = "Seems stuck on the same element. Try clicking Skip or rephrase your goal."
NOTICE_RESTRICTED = "This page cannot be guided. Navigate to a regular website to continue."
NOTICE_UNREADABLE = "Could not read this page. Try refreshing or navigating to another page."
NOTICE_UNREACHABLE = "Could not connect to this page. Try refreshing."

Listener = Callable[[Dict[str, Any]], None]


class PageObserver(Protocol):
    async def extract(self) -> Optional[PageSnapshot]:
        ...


class Actuator(Protocol):
    async def show(self, step: GuidanceStep) -> bool:
        ...

    async def hide(self) -> bool:
        ...


class GuideSession:
    """
    会话编排器：唯一能修改 SessionState 的地方。

    同一时间最多只有一次规划在执行，执行中到达的触发直接丢弃。
    延迟触发（动作完成、页面跳转、重试）都是可取消的任务，
    stop/start 会取消它们，过期的规划也不会提交结果。
    """

    def __init__(
        self,
        observer: PageObserver,
        actuator: Actuator,
        store: Optional[StateStore] = None,
        settings: Optional[Settings] = None,
        llm_config: Optional[LLMConfig] = None,
        llm_http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.observer = observer
        self.actuator = actuator
        self.store = store if store is not None else MemoryStore()
        self.settings = settings or Settings()
        self.state = SessionState()
        self.llm_config = llm_config
        self._llm_http_client = llm_http_client
        self._llm: Optional[LLMPlanner] = None
        self._pass_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0
        self._listeners: List[Listener] = []

    # ── 对外状态 ──────────────────────────────────

    @property
    def memory(self) -> Memory:
        return Memory(self.state)

    @property
    def status(self) -> str:
        if self.state.completed:
            return "completed"
        if not self.state.active:
            return "idle"
        return "guiding" if self.state.current else "planning"

    def get_state(self) -> SessionState:
        return self.state.copy()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """订阅广播（STATE / ERROR / COMPLETED），返回取消订阅函数"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self, message: Dict[str, Any]):
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("广播回调出错: %s", message.get("type"))

    def _notify(self, msg: str):
        self._broadcast({"type": "ERROR", "msg": msg})

    def _commit(self):
        """持久化并广播最新状态（每次修改后调用）"""
        self.store.save(STATE_KEY, self.state.to_dict())
        self._broadcast({"type": "STATE", "state": self.state.to_dict()})

    # ── 状态迁移 ──────────────────────────────────

    def restore(self):
        """进程启动时从存储恢复状态和 LLM 配置"""
        raw = self.store.load(STATE_KEY)
        if raw:
            self.state = SessionState.from_dict(raw)
        llm_raw = self.store.load(LLM_KEY)
        if llm_raw:
            provider = llm_raw.get("provider", "openai")
            self.llm_config = LLMConfig.from_dict(llm_raw, api_key=env_api_key(provider))
        logger.info("状态已恢复: active=%s step=%d", self.state.active, self.state.step)

    async def start(self, goal: str, mode: str = "heuristic"):
        goal = (goal or "").strip()
        if not goal:
            raise ValueError("goal 不能为空")

        await self._reset()
        self.state = SessionState(goal=goal, active=True, mode=mode if mode in MODES else "heuristic")
        logger.info("开始引导: %r (mode=%s)", goal, self.state.mode)
        self._commit()
        await self._plan_pass()

    async def stop(self):
        await self._reset()
        self.state = SessionState()
        logger.info("引导已停止")
        self._commit()
        await self._withdraw()

    async def skip(self):
        if not self.state.active:
            return
        rec = self.memory.record()
        logger.info("跳过步骤: %s", rec.target_locator if rec else "(无当前步骤)")
        self._commit()
        await self._plan_pass()

    async def rescan(self):
        if not self.state.active:
            return
        await self._plan_pass()

    async def action_done(self, action: str):
        if not self.state.active:
            return
        rec = self.memory.record(action)
        logger.info("动作完成: %s %s", action, rec.target_locator if rec else "")
        self._commit()
        self._schedule(self.settings.settle_delay(action), self._plan_pass)

    async def navigation_changed(self, url: str):
        if not self.state.active:
            return
        logger.info("页面跳转: %s", url)
        self._schedule(self.settings.navigation_settle, self._plan_pass)

    async def set_llm_config(self, config: LLMConfig):
        if self._llm is not None:
            await self._llm.aclose()
            self._llm = None
        self.llm_config = config
        self.store.save(LLM_KEY, config.to_dict())
        logger.info("LLM 配置已更新: %s", config)

    async def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """处理来自 UI 面板 / 页面观察器 / 执行器的消息"""
        kind = message.get("type")
        logger.debug("收到消息: %s", kind)

        if kind == "START":
            try:
                await self.start(message.get("goal", ""), message.get("mode", "heuristic"))
            except ValueError as e:
                return {"ok": False, "error": str(e)}
        elif kind == "STOP":
            await self.stop()
        elif kind == "SKIP":
            await self.skip()
        elif kind == "RESCAN":
            await self.rescan()
        elif kind == "ACTION_DONE":
            await self.action_done(message.get("action", "click"))
        elif kind == "NAV_CHANGE":
            await self.navigation_changed(message.get("url", ""))
        elif kind == "SET_LLM":
            await self.set_llm_config(LLMConfig.from_dict(message.get("config") or {}))
        elif kind == "ERROR":
            self._notify(message.get("msg", ""))
        elif kind == "GET_STATE":
            return {"type": "STATE", "state": self.state.to_dict()}
        else:
            return {"ok": False, "error": f"unknown message type: {kind}"}
        return {"ok": True}

    # ── 规划 ──────────────────────────────────────

    async def _plan_pass(self, retry: bool = False):
        if not self.state.active or self.state.completed:
            return
        if self._pass_lock.locked():
            logger.debug("已有规划在执行，丢弃本次触发")
            return

        async with self._pass_lock:
            generation = self._generation
            try:
                snapshot = await self.observer.extract()
            except RestrictedPageError as e:
                if self._stale(generation):
                    return
                logger.info("受限页面: %s", e.url)
                self._notify(NOTICE_RESTRICTED)
                return
            except PageUnreachableError as e:
                if self._stale(generation):
                    return
                if retry:
                    logger.warning("页面仍无法连接: %s", e)
                    self._notify(NOTICE_UNREACHABLE)
                else:
                    logger.info("页面无法连接，%.1fs 后重试: %s", self.settings.retry_delay, e)
                    self._schedule(self.settings.retry_delay, partial(self._plan_pass, retry=True))
                return

            if self._stale(generation):
                return
            if snapshot is None:
                self._notify(NOTICE_UNREADABLE)
                return
            await self._apply(snapshot, generation)

    def _stale(self, generation: int) -> bool:
        """
        规划期间会话被 start/stop 重置过：丢弃本次结果。
        新会话仍在进行时补排一次规划，它自己的那次触发已因本次占用而被丢弃。
        """
        if generation == self._generation:
            return False
        if self.state.active and not self.state.completed:
            self._schedule(0, self._plan_pass)
        return True

    async def _apply(self, snapshot: PageSnapshot, generation: int):
        phase = detect_phase(snapshot)
        logger.info(
            "页面 %s: %d 个元素, panel=%s, phase=%s",
            snapshot.url, len(snapshot.elements), snapshot.has_active_panel, phase,
        )

        # 第一步之前不认完成页，落地页本身可能就带着这些词
        if phase == PHASE_SUCCESS and self.state.step > 1:
            logger.info("检测到完成页")
            self.state.completed = True
            self.state.active = False
            self.state.current = None
            self._commit()
            self._broadcast({"type": "COMPLETED"})
            await self._withdraw()
            return

        step_before = self.state.step
        step = await self._plan(snapshot, phase)

        if self._stale(generation):
            return
        if self.state.step != step_before:
            # 规划期间用户已经完成了动作，结果作废，重新规划
            self._schedule(0, self._plan_pass)
            return

        if step is not None and self.memory.is_stuck(
            step, self.settings.stuck_window, self.settings.min_stuck_hint
        ):
            logger.info("检测到死循环: %s", step.target_locator)
            self.state.current = None
            self._commit()
            self._notify(NOTICE_STUCK)
            return

        self.state.current = step
        self._commit()
        if step is None:
            self._notify(NOTICE_NO_STEP)
            return
        logger.info("第 %d 步: %s %s", step.step_number, step.action, step.target_locator)
        await self.actuator.show(step)

    async def _plan(self, snapshot: PageSnapshot, phase: str) -> Optional[GuidanceStep]:
        if self.state.mode == "llm" and self.llm_config is not None and self.llm_config.api_key:
            step = await self._llm_planner().plan(snapshot, self.state)
            if step is not None:
                return step
            logger.info("LLM 未给出可用步骤，回退到启发式规划")
        return heuristic_plan(snapshot, self.state, phase)

    def _llm_planner(self) -> LLMPlanner:
        if self._llm is None:
            self._llm = LLMPlanner(
                self.llm_config,
                timeout=self.settings.llm_timeout,
                http_client=self._llm_http_client,
            )
        return self._llm

    async def _withdraw(self):
        try:
            await self.actuator.hide()
        except PageUnreachableError as e:
            logger.debug("撤回引导失败: %s", e)

    # ── 延迟任务 ──────────────────────────────────

    def _schedule(self, delay: float, fn: Callable[[], Awaitable[None]]):
        generation = self._generation

        async def runner():
            await asyncio.sleep(delay)
            if generation == self._generation:
                await fn()

        task = asyncio.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("延迟规划出错", exc_info=task.exception())

    async def _reset(self):
        """作废所有进行中的规划和延迟任务"""
        self._generation += 1
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def join(self):
        """等待所有延迟任务结束（包括它们新排的任务）"""
        while True:
            current = asyncio.current_task()
            pending = [t for t in self._tasks if t is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        await self._reset()
        if self._llm is not None:
            await self._llm.aclose()
            self._llm = None
