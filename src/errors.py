from __future__ import annotations

from typing import Any, Optional


class ChunkProtocolError(Exception):
    """分块生成协议的异常基类（便于上层统一捕获）。"""


class GenerationError(ChunkProtocolError):
    """外部生成能力失败（可重试；重试耗尽后为致命错误）。"""


class ExtractionError(ChunkProtocolError):
    """外部抽取能力失败（非致命：降级为空 delta + 警告）。"""


class ExtractionFormatError(ExtractionError):
    """抽取输出无法解析（空文本/非文本）。"""


class UnknownRuleError(ChunkProtocolError, KeyError):
    def __init__(self, rule_id: str):
        super().__init__(rule_id)
        self.rule_id = rule_id

    def __str__(self) -> str:
        return f"unknown rule id: {self.rule_id}"


class MonotonicityViolationError(ChunkProtocolError):
    """
    不可逆 flag 回退：
    - 布尔 flag 只能 False -> True
    - 序数 flag 只能递增
    """

    def __init__(self, name: str, old: Any, new: Any, reason: str = ""):
        self.name = name
        self.old = old
        self.new = new
        self.reason = reason or "regression"
        super().__init__(f"irreversible flag '{name}' cannot move {old!r} -> {new!r} ({self.reason})")


class RuleImmutableError(ChunkProtocolError):
    def __init__(self, rule_id: str, message: Optional[str] = None):
        self.rule_id = rule_id
        super().__init__(message or f"rule '{rule_id}' text is already established")


class StateNotInitializedError(ChunkProtocolError, RuntimeError):
    def __init__(self, message: str = "canonical state is not initialized"):
        super().__init__(message)


class CheckpointStorageError(ChunkProtocolError):
    """检查点无法持久化（致命）。"""


class IncompatibleCheckpointError(ChunkProtocolError):
    """检查点协议主版本不一致，拒绝恢复。"""
