from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from run_engine.config.loader import RunEngineConfig, load_config_dicts
from run_engine.state.persistence import InMemoryPersistence
from run_engine.streaming.broker import RunStreamBroker


class _FakeWorker:
    """`PubSub.run_in_thread` 返回值的替身（只记录 stop）。"""

    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakePubSub:
    """最小 pubsub fake：subscribe(**handlers) 后由 client.publish 同步回调。"""

    def __init__(self, client: "FakeRedisClient") -> None:
        self._client = client
        self.channels: List[str] = []
        self.worker: Optional[_FakeWorker] = None
        self.closed = False

    def subscribe(self, **handlers: Callable[[dict], None]) -> None:
        for channel, handler in handlers.items():
            self.channels.append(channel)
            self._client.handlers.setdefault(channel, []).append(handler)

    def run_in_thread(self, sleep_time: float = 0.0, daemon: bool = False) -> _FakeWorker:
        _ = (sleep_time, daemon)
        self.worker = _FakeWorker()
        return self.worker

    def close(self) -> None:
        self.closed = True
        for channel in self.channels:
            self._client.handlers[channel] = []


class FakeRedisClient:
    """
    最小 Redis fake（list / string / pubsub）。

    说明：
    - publish 在调用线程内同步投递给订阅者；
    - `duplicate_notifications` > 1 时每条通知重复投递；`drop_notifications=True` 时丢弃通知（模拟合并）。
    """

    def __init__(self) -> None:
        self.lists: Dict[str, List[str]] = {}
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.handlers: Dict[str, List[Callable[[dict], None]]] = {}
        self.published: List[Tuple[str, str]] = []
        self.pubsubs: List[FakePubSub] = []
        self.duplicate_notifications = 1
        self.drop_notifications = False

    def rpush(self, key: str, *values: Any) -> int:
        items = self.lists.setdefault(key, [])
        items.extend(str(v) for v in values)
        return len(items)

    def lrange(self, key: str, start: int, end: int) -> List[str]:
        items = self.lists.get(key, [])
        stop = len(items) if end == -1 else end + 1
        return list(items[start:stop])

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    def publish(self, channel: str, data: Any) -> int:
        self.published.append((channel, str(data)))
        handlers = list(self.handlers.get(channel, []))
        if self.drop_notifications and channel.endswith(":new_response"):
            return len(handlers)
        for _ in range(self.duplicate_notifications):
            for handler in handlers:
                handler({"type": "message", "channel": channel, "data": str(data)})
        return len(handlers)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = int(ex)
        return True

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = int(seconds)
        return key in self.lists or key in self.values

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            if self.lists.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def pubsub(self, ignore_subscribe_messages: bool = False) -> FakePubSub:
        _ = ignore_subscribe_messages
        ps = FakePubSub(self)
        self.pubsubs.append(ps)
        return ps


@pytest.fixture
def fake_redis() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def broker(fake_redis: FakeRedisClient) -> RunStreamBroker:
    return RunStreamBroker(fake_redis, instance_id="worker-1")


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def fast_config() -> RunEngineConfig:
    """无迭代间隔的配置（测试用）。"""

    return load_config_dicts([{"run": {"pacing_delay_sec": 0}, "prompt": {"system_text": "You are a test agent."}}])
