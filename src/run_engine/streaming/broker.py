"""
RunStreamBroker：run 的响应流（pub/sub + append-only list）与控制平面。

两类通道：
- 控制通道：实例级 `run:<id>:control:<instance>` 与 run 级 `run:<id>:control`，两者总是一起订阅；
  收到 `STOP` 时调用方提供的取消回调。
- 响应通道：`run:<id>:new_response` 只发送无内容的 `new` 通知；消息本体追加在 `run:<id>:responses` 列表中。

投递语义（每个订阅者一个游标）：
- 订阅时先一次性回放已有历史，游标置为当前长度；
- 每次收到 `new`：读取整个列表，投递游标之后的全部条目，并把游标推进到新长度；
- 多个 `new` 在传输层合并/重复都不影响结果：进度由游标而不是通知次数决定（无缺口、严格有序、不重复）。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Union

from run_engine.config.loader import StreamConfig
from run_engine.core.contracts import Message, RunStatus, StreamSignal
from run_engine.streaming import keys
from run_engine.streaming.client import get_redis_client

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_TTL_SEC = 24 * 3600
DEFAULT_TTL_SEC = 3600

_STATUS_SIGNALS = {
    RunStatus.COMPLETED: StreamSignal.END_STREAM,
    RunStatus.FAILED: StreamSignal.ERROR,
    RunStatus.STOPPED: StreamSignal.STOP,
}


def _as_text(raw: Any) -> str:
    """bytes / str -> str（兼容未开启 decode_responses 的客户端）。"""

    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return "" if raw is None else str(raw)


def status_signal(status: Union[RunStatus, str]) -> Optional[StreamSignal]:
    """状态 -> 控制信号：COMPLETED→END_STREAM，FAILED→ERROR，STOPPED→STOP；其它返回 None。"""

    try:
        return _STATUS_SIGNALS.get(RunStatus(status))
    except ValueError:
        return None


class _PubSubListener:
    """一个 pubsub 连接 + 后台监听线程的生命周期封装。"""

    def __init__(self, client: Any, handlers: dict, *, sleep_time: float) -> None:
        """订阅 handlers 中的全部 channel 并启动监听线程。"""

        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**handlers)
        self._thread = self._pubsub.run_in_thread(sleep_time=sleep_time, daemon=True)
        self._closed = False

    def close(self) -> None:
        """停止监听线程并关闭连接（幂等；失败只记录日志）。"""

        if self._closed:
            return
        self._closed = True
        try:
            self._thread.stop()
            self._pubsub.close()
        except Exception as exc:
            logger.warning("failed to close pubsub listener: %s", exc)


@dataclass
class StreamSubscription:
    """
    一个消费者对某个 run 响应列表的游标视图。

    字段：
    - run_id：订阅的 run
    - last_delivered_index：已投递的条目数（单调不减）
    """

    run_id: str
    last_delivered_index: int
    _client: Any = field(repr=False)
    _deliver: Callable[[str], None] = field(repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _listener: Optional[_PubSubListener] = field(default=None, init=False, repr=False)

    def catch_up(self) -> int:
        """
        读取整个列表并投递游标之后的条目。

        返回：
        - 本次投递的条目数
        """

        with self._lock:
            entries = self._client.lrange(keys.response_list(self.run_id), 0, -1) or []
            fresh = entries[self.last_delivered_index :]
            for raw in fresh:
                try:
                    self._deliver(_as_text(raw))
                except Exception as exc:
                    logger.warning("subscriber callback failed for run %s: %s", self.run_id, exc)
            self.last_delivered_index = max(self.last_delivered_index, len(entries))
            return len(fresh)

    def _on_notification(self, message: dict) -> None:
        """pubsub handler：只对 `new` 通知做一次 catch-up。"""

        if _as_text(message.get("data")) == keys.NEW_RESPONSE_TOKEN:
            self.catch_up()

    def close(self) -> None:
        """取消订阅并丢弃游标。"""

        if self._listener is not None:
            self._listener.close()
            self._listener = None


class ControlListener:
    """同时监听实例级与 run 级控制通道；收到 STOP 调用回调。"""

    def __init__(self, client: Any, run_id: str, instance_id: str, on_stop: Callable[[], None], *, sleep_time: float) -> None:
        """订阅两个控制通道。"""

        self.run_id = run_id
        self._on_stop = on_stop
        handlers = {
            keys.control_channel(run_id, instance_id): self._handle,
            keys.global_control_channel(run_id): self._handle,
        }
        self._listener = _PubSubListener(client, handlers, sleep_time=sleep_time)

    def _handle(self, message: dict) -> None:
        """pubsub handler：`STOP` -> 回调；其它信号只记录 debug。"""

        payload = _as_text(message.get("data"))
        if payload == StreamSignal.STOP.value:
            logger.info("stop signal received for run %s on %s", self.run_id, _as_text(message.get("channel")))
            try:
                self._on_stop()
            except Exception as exc:
                logger.warning("stop callback failed for run %s: %s", self.run_id, exc)
        else:
            logger.debug("control payload %r ignored for run %s", payload, self.run_id)

    def close(self) -> None:
        """停止监听。"""

        self._listener.close()


class RunStreamBroker:
    """
    基于 Redis 的 run 流 broker。

    说明：
    - 客户端为同步 redis-py 客户端（或同接口的替身）；pubsub 由后台线程驱动。
    - 所有写操作都是 append-only，可在多个 worker 之间并发 publish/subscribe。
    """

    def __init__(
        self,
        client: Any,
        *,
        instance_id: str,
        response_ttl_sec: int = DEFAULT_RESPONSE_TTL_SEC,
        default_ttl_sec: int = DEFAULT_TTL_SEC,
        listener_sleep_sec: float = 0.01,
    ) -> None:
        """
        创建 broker。

        参数：
        - client：redis 客户端
        - instance_id：当前 worker 实例 id（实例级控制通道与 active-run 标记使用）
        - response_ttl_sec：run 结束后响应列表的保留时长
        - default_ttl_sec：active-run 标记的 TTL
        - listener_sleep_sec：pubsub 监听线程的轮询间隔
        """

        self._client = client
        self.instance_id = instance_id
        self._response_ttl_sec = int(response_ttl_sec)
        self._default_ttl_sec = int(default_ttl_sec)
        self._listener_sleep_sec = float(listener_sleep_sec)

    @classmethod
    def from_config(cls, cfg: StreamConfig, *, client: Optional[Any] = None) -> "RunStreamBroker":
        """
        按 `stream` 配置段构造 broker。

        参数：
        - cfg：stream 配置（redis_url / instance_id / TTL / 监听轮询间隔）
        - client：可选；已构造好的 redis 客户端（否则按 `cfg.redis_url` 创建）

        异常：
        - FrameworkError(STREAM_BACKEND_UNAVAILABLE)：redis 依赖缺失或连接参数无效
        """

        return cls(
            get_redis_client(cfg.redis_url, injected=client),
            instance_id=cfg.instance_id,
            response_ttl_sec=cfg.response_ttl_sec,
            default_ttl_sec=cfg.default_ttl_sec,
            listener_sleep_sec=cfg.listener_poll_sec,
        )

    # ---- 响应流 ----

    def publish_message(self, run_id: str, message: Union[Message, str]) -> int:
        """
        追加一条消息并发出 `new` 通知（先 RPUSH 再 PUBLISH）。

        返回：
        - 追加后的列表长度
        """

        payload = message.model_dump_json() if isinstance(message, Message) else str(message)
        length = int(self._client.rpush(keys.response_list(run_id), payload))
        self._client.publish(keys.response_channel(run_id), keys.NEW_RESPONSE_TOKEN)
        return length

    def read_responses(self, run_id: str, start: int = 0) -> List[str]:
        """读取响应列表（从 start 开始）。"""

        entries = self._client.lrange(keys.response_list(run_id), int(start), -1) or []
        return [_as_text(e) for e in entries]

    def subscribe_responses(self, run_id: str, on_message: Callable[[str], None], *, backfill: bool = True) -> StreamSubscription:
        """
        订阅一个 run 的响应流。

        流程：
        1) 读取当前列表：backfill=True 时一次性投递已有条目；游标置为当前长度
        2) 订阅 `new` 通知
        3) 立即 catch-up 一次，补上 1) 与 2) 之间发布的条目

        参数：
        - on_message：收到一条序列化 Message 时调用（可能在监听线程中）
        - backfill：是否投递订阅前已有的历史
        """

        existing = self.read_responses(run_id)
        if backfill:
            for raw in existing:
                try:
                    on_message(raw)
                except Exception as exc:
                    logger.warning("subscriber callback failed during backfill for run %s: %s", run_id, exc)
        sub = StreamSubscription(run_id=run_id, last_delivered_index=len(existing), _client=self._client, _deliver=on_message)
        sub._listener = _PubSubListener(
            self._client,
            {keys.response_channel(run_id): sub._on_notification},
            sleep_time=self._listener_sleep_sec,
        )
        sub.catch_up()
        return sub

    # ---- 控制平面 ----

    def publish_control(self, run_id: str, signal: StreamSignal, *, instance_id: Optional[str] = None) -> None:
        """
        发送控制信号到 run 级通道（可选同时发送到某个实例级通道）。
        """

        self._client.publish(keys.global_control_channel(run_id), signal.value)
        if instance_id:
            self._client.publish(keys.control_channel(run_id, instance_id), signal.value)

    def publish_status_signal(self, run_id: str, status: Union[RunStatus, str]) -> Optional[StreamSignal]:
        """按状态映射发送控制信号；无映射时不发送并返回 None。"""

        signal = status_signal(status)
        if signal is not None:
            self.publish_control(run_id, signal)
        return signal

    def listen_for_stop(self, run_id: str, on_stop: Callable[[], None]) -> ControlListener:
        """同时订阅本实例与 run 级控制通道；收到 STOP 时调用 on_stop。"""

        return ControlListener(self._client, run_id, self.instance_id, on_stop, sleep_time=self._listener_sleep_sec)

    # ---- 生命周期 ----

    def mark_active(self, run_id: str) -> None:
        """设置“本实例正在执行该 run”标记（带默认 TTL）。"""

        self._client.set(keys.active_run_key(self.instance_id, run_id), "running", ex=self._default_ttl_sec)

    def cleanup(self, run_id: str) -> None:
        """run 结束：给响应列表设置 TTL，并删除 active-run 标记。"""

        self._client.expire(keys.response_list(run_id), self._response_ttl_sec)
        self._client.delete(keys.active_run_key(self.instance_id, run_id))
