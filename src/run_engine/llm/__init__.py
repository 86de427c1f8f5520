"""
模型提供方协议与离线 fake provider。

说明：
- 线上 HTTP/流式解码由集成方实现 `ModelProvider`；本包只约定 ModelRequest / ModelResponse 形状。
"""

from __future__ import annotations

from run_engine.llm.fake import FakeModelCall, FakeModelProvider
from run_engine.llm.protocol import ModelProvider, ModelRequest, ModelResponse, SamplingParams

__all__ = ["FakeModelCall", "FakeModelProvider", "ModelProvider", "ModelRequest", "ModelResponse", "SamplingParams"]
