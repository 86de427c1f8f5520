"""响应流与控制平面（Redis pub/sub + append-only list）。"""

from __future__ import annotations

from run_engine.streaming.broker import RunStreamBroker, StreamSubscription, status_signal
from run_engine.streaming.client import get_redis_client

__all__ = ["RunStreamBroker", "StreamSubscription", "get_redis_client", "status_signal"]
