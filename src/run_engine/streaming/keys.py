"""Redis 地址约定（channel / list / marker key）。"""

from __future__ import annotations

NEW_RESPONSE_TOKEN = "new"


def control_channel(run_id: str, instance_id: str) -> str:
    """实例级控制通道：`run:<runId>:control:<instanceId>`。"""

    return f"run:{run_id}:control:{instance_id}"


def global_control_channel(run_id: str) -> str:
    """run 级控制通道：`run:<runId>:control`。"""

    return f"run:{run_id}:control"


def response_channel(run_id: str) -> str:
    """新响应通知通道：`run:<runId>:new_response`（payload 固定为 `new`）。"""

    return f"run:{run_id}:new_response"


def response_list(run_id: str) -> str:
    """响应列表（append-only，每项为序列化的 Message）：`run:<runId>:responses`。"""

    return f"run:{run_id}:responses"


def active_run_key(instance_id: str, run_id: str) -> str:
    """“本实例正在执行该 run” 标记：`active_run:<instanceId>:<runId>`。"""

    return f"active_run:{instance_id}:{run_id}"
