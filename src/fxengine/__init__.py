"""Compile torch programs into hybrid programs of engines and torch fallback.

This package is intentionally small:
- Trace a module to FX and canonicalize the graph
- Split the graph into convertible segments and torch fallback blocks
- Build each segment into an engine and stitch the engines back in

Supported operations run on compiled engines; everything else keeps running
in torch.
"""

from . import log
from .config import CompileConfig, Device, DeviceType, EngineCapability
from .device import set_device
from .errors import (
    ConfigurationError,
    ConverterContractError,
    EngineBuildError,
    EngineRuntimeError,
    FxEngineError,
    LoweringError,
    PartitionError,
    UnsupportedOperationError,
)
from .fidelity import FidelityReport, FidelityStatus
from .hybrid import HybridProgram, check_operator_support, compile_program, convert_to_engine, embed_engine
from .log import set_log_level
from .network import CompiledEngine
from .types import DType, InputSpec, ShapeSpec, TensorFormat

__all__ = [
    "CompileConfig",
    "CompiledEngine",
    "ConfigurationError",
    "ConverterContractError",
    "DType",
    "Device",
    "DeviceType",
    "EngineBuildError",
    "EngineCapability",
    "EngineRuntimeError",
    "FidelityReport",
    "FidelityStatus",
    "FxEngineError",
    "HybridProgram",
    "InputSpec",
    "LoweringError",
    "PartitionError",
    "ShapeSpec",
    "TensorFormat",
    "UnsupportedOperationError",
    "check_operator_support",
    "compile_program",
    "convert_to_engine",
    "embed_engine",
    "log",
    "set_device",
    "set_log_level",
]
