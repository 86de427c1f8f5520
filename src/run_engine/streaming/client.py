"""Redis 客户端工厂（优先注入；否则按 URL 初始化）。"""

from __future__ import annotations

from typing import Any, Optional

from run_engine.core.errors import FrameworkError


def get_redis_client(url: str, *, injected: Optional[Any] = None) -> Any:
    """
    返回 Redis 客户端。

    参数：
    - url：Redis URL（例如 `redis://localhost:6379/0`）
    - injected：已构造好的客户端（测试或集成方自带连接池时使用）

    异常：
    - FrameworkError(STREAM_BACKEND_UNAVAILABLE)：依赖缺失或 URL 无法解析
    """

    if injected is not None:
        return injected

    try:
        import redis  # type: ignore[import-not-found]
    except ImportError as exc:
        raise FrameworkError(
            code="STREAM_BACKEND_UNAVAILABLE",
            message="Run stream backend is unavailable in current runtime.",
            details={"reason": f"redis dependency unavailable: {exc}"},
        ) from exc

    try:
        return redis.from_url(url, decode_responses=True)
    except Exception as exc:
        raise FrameworkError(
            code="STREAM_BACKEND_UNAVAILABLE",
            message="Run stream backend is unavailable in current runtime.",
            details={"url_scheme": str(url).split(":", 1)[0], "reason": f"redis connect failed: {exc}"},
        ) from exc
