"""
RunOrchestrator：单次 run 的状态机（迭代循环 + 终态收敛）。

生命周期：
1) 建 run（RUNNING）→ 登记 active-run → 订阅控制通道（STOP → 取消令牌）
2) 解析模型 → 加载系统提示 → 构建本 run 独占的 ToolRegistry（附加 XML 示例）
3) 迭代（最多 max_iterations 次）：
   - 取消检查 → 注入 todo → 上下文窗口 → 临时多模态上下文 → 模型调用
   - 先持久化再推送产出消息 → 执行工具调用（XML + 原生）→ 回注 tool_result
   - 扫描控制标记 / 错误状态 / 终止信号 → 写回 todo 更新块
   - 迭代间固定间隔（可被取消打断）
4) 终态收敛：finish 状态消息 → 状态存储（单调，发控制信号）→ 关闭监听 → 清理流资源 → 移除 active-run

取消在循环入口、模型解析之后、工具注册之前、每次模型调用之前、每个工具调用之前与间隔等待期间检查。
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from run_engine.config.loader import RunEngineConfig
from run_engine.context.window import ContextWindowManager, ContextWindowSettings
from run_engine.core.cancellation import CancellationToken
from run_engine.core.contracts import Message, MessageType, Run, RunStatus
from run_engine.core.ephemeral_context import EphemeralContextBuilder
from run_engine.core.errors import CancellationObserved, FrameworkError, PersistenceFailure, UserError
from run_engine.core.iteration import COMPLETE_MARKER, IterationOutcome, analyze_messages, extract_todo_update
from run_engine.core.loop_controller import LoopController
from run_engine.core.run_context import RunState
from run_engine.core.run_errors import RunError, classify_run_exception
from run_engine.core.tool_execution import EXECUTION_STRATEGIES, execute_tool_calls, strongest_signal, tool_result_message
from run_engine.core.utils import now_rfc3339
from run_engine.llm.protocol import ModelProvider, ModelRequest, SamplingParams, validate_model_provider
from run_engine.prompts.system import SystemPromptLoader, with_xml_examples
from run_engine.state.active_runs import ActiveRunTable
from run_engine.state.persistence import Persistence, ThreadStore
from run_engine.state.status_store import RunStatusStore
from run_engine.streaming.broker import ControlListener, RunStreamBroker
from run_engine.tools.builtin import builtin_tools
from run_engine.tools.capability import ToolCapability
from run_engine.tools.protocol import CallingConvention, TerminalSignal, ToolCall
from run_engine.tools.registry import ToolRegistry
from run_engine.tools.xml_calls import extract_xml_tool_calls
from run_engine.workspace.files import WorkspaceFiles

logger = logging.getLogger(__name__)

STOPPED_BY_SIGNAL = "Stopped by external signal"
ITERATION_ERROR = "Error during agent execution"
MAX_ITERATIONS_REACHED = "Reached maximum iterations"
TODO_SNAPSHOT_KIND = "todo_snapshot"

ToolFactory = Callable[[Run, WorkspaceFiles], Iterable[ToolCapability]]


def pause_message(tool: str) -> str:
    """暂停类终态的 error_message（`STOPPED` + 该文本即“等待用户”）。"""

    return f"Awaiting user input for {tool}"


def is_paused(run: Run) -> bool:
    """run 是否处于“暂停等待用户”（STOPPED + 暂停文本）。"""

    return run.status is RunStatus.STOPPED and bool(run.error_message) and "Awaiting user input" in str(run.error_message)


@dataclass(frozen=True)
class RunRequest:
    """
    一次 run 的输入。

    字段：
    - thread_id / project_id：run 归属
    - model：请求的模型名或别名（空表示配置默认模型）
    - run_id：可选；调用方预分配的 run id
    - max_iterations / tool_execution_strategy：覆盖配置
    - allowed_operations：`registration_name -> 操作名列表`；只对出现在映射中的工具生效
    """

    thread_id: str
    project_id: str
    model: Optional[str] = None
    run_id: Optional[str] = None
    max_iterations: Optional[int] = None
    tool_execution_strategy: Optional[str] = None
    allowed_operations: Optional[Mapping[str, Sequence[str]]] = None


@dataclass(frozen=True)
class RunOutcome:
    """run 的返回结构。"""

    run_id: str
    status: RunStatus
    error_message: Optional[str]
    iterations: int
    messages: List[Message] = field(default_factory=list)
    error: Optional[Dict[str, object]] = None


class RunOrchestrator:
    """把 registry / broker / status store / context manager 串成一次 run 的生命周期。"""

    def __init__(
        self,
        *,
        config: RunEngineConfig,
        persistence: Persistence,
        provider: ModelProvider,
        workspace: WorkspaceFiles,
        broker: Optional[RunStreamBroker] = None,
        tool_factories: Sequence[ToolFactory] = (),
        include_builtin_tools: bool = True,
        prompt_loader: Optional[SystemPromptLoader] = None,
        status_store: Optional[RunStatusStore] = None,
        active_runs: Optional[ActiveRunTable] = None,
    ) -> None:
        """
        参数：
        - config：已校验的引擎配置
        - persistence：Persistence 实现（runs/messages/threads）
        - provider：ModelProvider 实现
        - workspace：工作区文件协议（todo 读写与内置文件工具）
        - broker：可选；提供时推送响应流并监听 STOP
        - tool_factories：每个 run 调用一次，返回该 run 的工具实例
        - include_builtin_tools：是否注册内置 message/files 工具
        - prompt_loader：系统提示来源（默认按 `prompt` 配置段）
        - status_store / active_runs：可注入（默认各自新建）
        """

        self._config = config
        self._persistence = persistence
        self._provider = provider
        self._workspace = workspace
        self._broker = broker
        self._tool_factories = list(tool_factories)
        self._include_builtin_tools = bool(include_builtin_tools)
        self._prompt_loader = prompt_loader or SystemPromptLoader.from_config(config.prompt)
        self._threads = ThreadStore(persistence)
        self._status = status_store or RunStatusStore(persistence, broker)
        self._active = active_runs or ActiveRunTable()
        self._context = ContextWindowManager(self._threads, ContextWindowSettings(**config.context.model_dump()))
        self._ephemeral = EphemeralContextBuilder(self._threads)

    @property
    def status_store(self) -> RunStatusStore:
        """状态存储（run 状态的唯一权威来源）。"""

        return self._status

    @property
    def active_runs(self) -> ActiveRunTable:
        """本进程活跃 run 表。"""

        return self._active

    @property
    def instance_id(self) -> str:
        """本 worker 的实例 id：有 broker 时以 broker 为准（与 active-run 键和实例控制通道一致）。"""

        if self._broker is not None:
            return self._broker.instance_id
        return self._config.stream.instance_id

    # ---- 入口 ----

    def start_run(self, request: RunRequest) -> Run:
        """创建 RUNNING 状态的 run 记录（不执行）。"""

        self._threads.ensure_thread(request.thread_id, project_id=request.project_id)
        return self._status.create_run(thread_id=request.thread_id, project_id=request.project_id, run_id=request.run_id)

    async def execute(self, request: RunRequest, *, token: Optional[CancellationToken] = None, run: Optional[Run] = None) -> RunOutcome:
        """
        执行一次 run 直到终态。

        参数：
        - request：run 输入
        - token：可选的取消令牌（调用方可直接 cancel）
        - run：可选；已由 `start_run` 创建的 run

        说明：
        - 循环体中未捕获的异常 → FAILED（异常文本为 error_message）；失败记录本身是 best-effort。
        - 任务被 asyncio 取消时收敛为 STOPPED 后继续向上抛出 CancelledError。
        """

        run = run or self.start_run(request)
        token = token or CancellationToken()
        state = RunState(run=run, token=token, threads=self._threads, broker=self._broker)
        failure: Optional[RunError] = None
        listener = self._begin(state)

        try:
            await self._run_loop(state, request)
        except CancellationObserved as e:
            logger.info("run %s: cancellation observed at %s", run.id, e.where)
            state.finish(RunStatus.STOPPED, STOPPED_BY_SIGNAL)
        except asyncio.CancelledError:
            logger.info("run %s: task cancelled", run.id)
            state.finish(RunStatus.STOPPED, STOPPED_BY_SIGNAL)
            raise
        except Exception as e:
            logger.exception("run %s: unexpected error", run.id)
            failure = classify_run_exception(e)
            self._emit_failure(state, failure)
            state.finish(RunStatus.FAILED, str(e) or type(e).__name__)
        finally:
            self._finalize(state, listener)

        return RunOutcome(
            run_id=run.id,
            status=state.status,
            error_message=state.error_message,
            iterations=state.iteration,
            messages=list(state.emitted),
            error=failure.to_payload() if failure is not None else None,
        )

    # ---- 生命周期 ----

    def _begin(self, state: RunState) -> Optional[ControlListener]:
        """登记 active-run 并订阅控制通道（失败只记录日志）。"""

        self._active.insert(state.run_id, self.instance_id)
        logger.info("run %s started (thread=%s project=%s)", state.run_id, state.thread_id, state.run.project_id)
        if self._broker is None:
            return None
        try:
            self._broker.mark_active(state.run_id)
        except Exception as e:
            logger.warning("run %s: failed to set active-run marker: %s", state.run_id, e)
        try:
            return self._broker.listen_for_stop(state.run_id, lambda: state.token.cancel(STOPPED_BY_SIGNAL))
        except Exception as e:
            logger.warning("run %s: failed to subscribe control channels: %s", state.run_id, e)
            return None

    def _emit_failure(self, state: RunState, failure: RunError) -> None:
        """FAILED 时先持久化并推送一条 error 状态消息（best-effort）。"""

        payload = failure.to_payload()
        try:
            state.emit_message(
                Message(
                    thread_id=state.thread_id,
                    type=MessageType.STATUS,
                    content={"status_type": "error", "message": payload.get("message", "")},
                    metadata={"run_id": state.run_id, "error": payload},
                )
            )
        except Exception as e:
            logger.error("run %s: failed to record failure status: %s", state.run_id, e)

    def _finalize(self, state: RunState, listener: Optional[ControlListener]) -> None:
        """终态收敛（每一步都 best-effort）。"""

        if not state.status.is_terminal:
            state.finish(RunStatus.FAILED, "Run ended without a terminal status")
        state.emit_message(
            Message(
                thread_id=state.thread_id,
                type=MessageType.STATUS,
                content={"status_type": "finish", "finish_reason": state.status.value, "message": state.error_message},
                metadata={"run_id": state.run_id, "iterations": state.iteration, "finished_at": now_rfc3339()},
            )
        )
        try:
            self._status.update_status(state.run_id, state.status, state.error_message)
        except Exception as e:
            logger.error("run %s: failed to record terminal status %s: %s", state.run_id, state.status.value, e)
        if listener is not None:
            listener.close()
        if self._broker is not None:
            try:
                self._broker.cleanup(state.run_id)
            except Exception as e:
                logger.warning("run %s: stream cleanup failed: %s", state.run_id, e)
        self._active.remove(state.run_id)
        logger.info("run %s finished: %s%s", state.run_id, state.status.value, f" ({state.error_message})" if state.error_message else "")

    # ---- 循环 ----

    async def _run_loop(self, state: RunState, request: RunRequest) -> None:
        """迭代循环；终态通过 `state.finish` 记录，取消以 `CancellationObserved` 退出。"""

        token = state.token
        max_iterations = request.max_iterations or self._config.run.max_iterations
        strategy = request.tool_execution_strategy or self._config.run.tool_execution_strategy
        if strategy not in EXECUTION_STRATEGIES:
            raise UserError(f"unknown tool execution strategy: {strategy!r}", code="INVALID_TOOL_EXECUTION_STRATEGY")
        loop = LoopController(max_iterations=max_iterations)

        token.raise_if_cancelled("loop entry")
        validate_model_provider(self._provider)
        state.model = self._config.models.resolve(request.model)
        logger.debug("run %s: model resolved to %s", state.run_id, state.model)
        token.raise_if_cancelled("after model resolution")

        base_prompt = self._prompt_loader.load()
        token.raise_if_cancelled("before tool registration")
        state.registry = self._build_registry(state, request)
        state.system_prompt = with_xml_examples(base_prompt, state.registry.list_xml_examples())

        while loop.has_budget():
            token.raise_if_cancelled("iteration start")
            state.iteration = loop.next_iteration()
            logger.debug("run %s: iteration %d/%d", state.run_id, state.iteration, max_iterations)

            self._inject_todo(state)
            outcome = await self._run_iteration(state, strategy=strategy)
            self._apply_todo_updates(state, outcome.messages)

            transition = self._terminal_transition(outcome)
            if transition is not None:
                state.finish(*transition)
                return

            if loop.has_budget() and await token.sleep(self._config.run.pacing_delay_sec):
                raise CancellationObserved("pacing delay", reason=token.reason)

        logger.warning("run %s: reached maximum iterations (%d)", state.run_id, max_iterations)
        state.finish(RunStatus.COMPLETED, MAX_ITERATIONS_REACHED)

    def _build_registry(self, state: RunState, request: RunRequest) -> ToolRegistry:
        """为本 run 构建独占的 ToolRegistry。"""

        registry = ToolRegistry(run_id=state.run_id)
        tools: List[ToolCapability] = list(builtin_tools(self._workspace)) if self._include_builtin_tools else []
        for factory in self._tool_factories:
            tools.extend(factory(state.run, self._workspace))
        allowed = request.allowed_operations or {}
        for tool in tools:
            registry.register(tool, allowed.get(tool.registration_name))
        logger.debug("run %s: registered %d tool schemas", state.run_id, len(registry.list_schemas()))
        return registry

    def _sampling(self, model: str) -> SamplingParams:
        """采样参数：配置值；max_tokens 未配置时取模型默认值。"""

        cfg = self._config.sampling
        max_tokens = cfg.max_tokens or self._config.models.max_tokens_by_model.get(model)
        return SamplingParams(temperature=cfg.temperature, max_tokens=max_tokens, top_p=cfg.top_p)

    def _history(self, thread_id: str) -> List[Message]:
        """模型可见历史（按时间顺序；todo 快照只保留最新一条），再经上下文窗口管理。"""

        messages = self._threads.list_messages(thread_id, llm_only=True)
        last_todo: Optional[str] = None
        for m in messages:
            if m.metadata.get("kind") == TODO_SNAPSHOT_KIND:
                last_todo = m.id
        visible = [m for m in messages if m.metadata.get("kind") != TODO_SNAPSHOT_KIND or m.id == last_todo]
        visible.sort(key=lambda m: m.created_at)
        return self._context.apply(thread_id, visible)

    async def _run_iteration(self, state: RunState, *, strategy: str) -> IterationOutcome:
        """一次迭代：模型调用 → 持久化/推送 → 工具执行 → 分析。"""

        assert state.registry is not None
        history = self._history(state.thread_id)
        ephemeral = self._ephemeral.build(state.thread_id)

        state.token.raise_if_cancelled("before model call")
        request = ModelRequest(
            system_prompt=state.system_prompt,
            history=history,
            ephemeral_context=ephemeral.message,
            tool_schemas=[s for s in state.registry.list_schemas() if s.calling_convention is CallingConvention.FUNCTION],
            model=state.model,
            sampling=self._sampling(state.model),
            run_id=state.run_id,
            thread_id=state.thread_id,
            xml_examples=state.registry.list_xml_examples(),
        )
        llm_call_started_at = now_rfc3339()
        started = time.monotonic()
        response = await self._provider.call(request)
        duration_ms = int((time.monotonic() - started) * 1000)
        self._ephemeral.consume(state.thread_id, ephemeral)

        produced: List[Message] = []
        for message in response.messages:
            message.metadata.update(
                {
                    "run_id": state.run_id,
                    "iteration": state.iteration,
                    "model": state.model,
                    "llm_call_started_at": llm_call_started_at,
                    "llm_duration_ms": duration_ms,
                }
            )
            if response.usage:
                message.metadata.setdefault("usage", dict(response.usage))
            produced.append(state.emit_message(message))

        calls, assistant_id = self._collect_tool_calls(state, produced, response.tool_calls)
        executed = await execute_tool_calls(state.registry, calls, token=state.token, strategy=strategy)
        for item in executed:
            produced.append(state.emit_message(tool_result_message(state.thread_id, item, assistant_message_id=assistant_id)))

        outcome = analyze_messages(produced)
        if response.terminal_signal is not None:
            outcome.terminal_signal = response.terminal_signal
        signalled = strongest_signal(executed)
        if signalled is not None and outcome.terminal_signal is None:
            outcome.terminal_signal = signalled.result.terminal_signal
            if outcome.terminating_tool is None and signalled.result.terminal_signal is TerminalSignal.PAUSED:
                outcome.terminating_tool = signalled.terminating_tool
        return outcome

    def _collect_tool_calls(self, state: RunState, produced: List[Message], native: Sequence[ToolCall]) -> Tuple[List[ToolCall], Optional[str]]:
        """原生调用在前，XML 调用（按出现顺序；`max_xml_tool_calls > 0` 时跨消息总数受限，0 表示不限）在后。"""

        assert state.registry is not None
        calls = list(native)
        limit = int(self._config.run.max_xml_tool_calls)
        remaining: Optional[int] = limit if limit > 0 else None
        assistant_id: Optional[str] = None
        for message in produced:
            if message.type != MessageType.ASSISTANT.value:
                continue
            assistant_id = message.id
            if remaining is not None and remaining <= 0:
                continue
            found = extract_xml_tool_calls(message.text(), state.registry, max_calls=remaining or 0)
            if remaining is not None:
                remaining -= len(found)
            calls.extend(found)
        return calls, assistant_id

    def _terminal_transition(self, outcome: IterationOutcome) -> Optional[Tuple[RunStatus, Optional[str]]]:
        """迭代结论 -> 终态（None 表示继续）。"""

        if outcome.has_error:
            return RunStatus.FAILED, ITERATION_ERROR
        if outcome.terminating_tool == COMPLETE_MARKER:
            return RunStatus.COMPLETED, None
        if outcome.terminating_tool is not None:
            return RunStatus.STOPPED, pause_message(outcome.terminating_tool)
        if outcome.terminal_signal is TerminalSignal.COMPLETED:
            return RunStatus.COMPLETED, None
        if outcome.terminal_signal is TerminalSignal.PAUSED:
            return RunStatus.STOPPED, pause_message("model")
        return None

    # ---- todo ----

    def _inject_todo(self, state: RunState) -> None:
        """读取 todo 文档；非空时作为 user 消息追加到线程（读失败只记录日志）。"""

        path = self._config.run.todo_path
        try:
            content = self._workspace.read_text(path)
        except (OSError, ValueError, UserError, FrameworkError) as e:
            logger.warning("run %s: cannot read %s: %s", state.run_id, path, e)
            return
        if not content:
            return
        state.persist(
            Message(
                thread_id=state.thread_id,
                type=MessageType.USER,
                content=f"Current todo.md:\n```\n{content}\n```",
                is_llm_message=True,
                metadata={"kind": TODO_SNAPSHOT_KIND, "run_id": state.run_id, "iteration": state.iteration},
            )
        )

    def _apply_todo_updates(self, state: RunState, messages: Sequence[Message]) -> None:
        """把 assistant 输出中的 `<todo_update>` 块写回 todo 文档（写失败只记录日志）。"""

        path = self._config.run.todo_path
        for message in messages:
            if message.type != MessageType.ASSISTANT.value:
                continue
            update = extract_todo_update(message.text())
            if update is None:
                continue
            try:
                self._workspace.write_text(path, update)
                logger.info("run %s: %s updated from model output", state.run_id, path)
            except (OSError, UserError, FrameworkError, PersistenceFailure) as e:
                logger.error("run %s: failed to write %s: %s", state.run_id, path, e)
