from __future__ import annotations

from typing import Optional


class FxEngineError(RuntimeError):
    """Base error for fxengine."""


class ConfigurationError(FxEngineError, ValueError):
    """Raised for invalid input specs or compile settings, before any build step."""


class LoweringError(FxEngineError):
    """Raised when tracing or a lowering pass meets a graph it cannot canonicalize."""


class UnsupportedOperationError(FxEngineError):
    """Raised when full compilation was required but the graph cannot be fully converted."""


class ConverterContractError(FxEngineError):
    """Raised when a converter is misused or breaks its output contract."""


class PartitionError(FxEngineError):
    """Raised when a partition plan is internally inconsistent."""


class EngineBuildError(FxEngineError):
    """Raised when a segment cannot be turned into an engine."""

    def __init__(self, message: str, *, segment: Optional[str] = None, node: Optional[str] = None) -> None:
        self.reason = message
        self.segment = segment
        self.node = node
        where = []
        if segment is not None:
            where.append(f"segment {segment!r}")
        if node is not None:
            where.append(f"node {node!r}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)


class EngineRuntimeError(FxEngineError):
    """Raised when an engine is invoked with inputs outside its bindings."""
