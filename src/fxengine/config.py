from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

import torch

from .errors import ConfigurationError
from .types import DType

KERNEL_PRECISIONS = frozenset({DType.FLOAT, DType.HALF, DType.INT8, DType.BOOL})


class DeviceType(enum.Enum):
    GPU = "gpu"
    DLA = "dla"

    @classmethod
    def parse(cls, token: Union[str, "DeviceType"]) -> "DeviceType":
        if isinstance(token, DeviceType):
            return token
        try:
            return cls(str(token).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Invalid device type, options are [ gpu | dla ] found: {token}") from None


class EngineCapability(enum.Enum):
    STANDARD = "standard"
    SAFETY = "safety"
    DLA_STANDALONE = "dla_standalone"

    @classmethod
    def parse(cls, token: Union[str, "EngineCapability"]) -> "EngineCapability":
        if isinstance(token, EngineCapability):
            return token
        try:
            return cls(str(token).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid engine capability, options are [ standard | safety | dla_standalone ] found: {token}"
            ) from None


@dataclass(frozen=True)
class Device:
    """Engine build target."""

    device_type: DeviceType = DeviceType.GPU
    gpu_id: int = 0
    dla_core: int = 0
    # Only meaningful for DLA: run layers DLA cannot handle on the GPU.
    allow_gpu_fallback: bool = False

    def __post_init__(self) -> None:
        if self.gpu_id < 0:
            raise ConfigurationError("gpu_id must be >= 0")
        if self.dla_core < 0:
            raise ConfigurationError("dla_core must be >= 0")


def _qualified_type_name(obj_type: type) -> str:
    return f"{obj_type.__module__}.{obj_type.__qualname__}"


@dataclass(frozen=True)
class CompileConfig:
    """All build-time options. Immutable once handed to the compiler."""

    enabled_precisions: frozenset[DType] = frozenset({DType.FLOAT})
    device: Device = field(default_factory=Device)
    capability: EngineCapability = EngineCapability.STANDARD

    # Partitioning
    min_block_size: int = 1
    torch_executed_ops: tuple[str, ...] = ()
    torch_executed_modules: tuple[str, ...] = ()
    require_full_compilation: bool = False

    # Reduced precision without explicit calibration data uses this reference.
    calibrator: Optional[Any] = None

    # Builder
    workspace_size: int = 0
    num_min_timing_iters: int = 2
    num_avg_timing_iters: int = 1
    max_batch_size: int = 0
    debug: bool = False
    strict_types: bool = False
    sparse_weights: bool = False
    disable_tf32: bool = False
    truncate_long_and_double: bool = False

    # Lowering: expand erf-form gelu into the tanh approximation.
    approximate_gelu: bool = False

    def __post_init__(self) -> None:
        precisions = frozenset(DType.parse(p) for p in self.enabled_precisions)
        object.__setattr__(self, "enabled_precisions", precisions)
        object.__setattr__(self, "torch_executed_ops", tuple(normalize_op_kind(k) for k in self.torch_executed_ops))
        object.__setattr__(self, "torch_executed_modules", tuple(self.torch_executed_modules))
        object.__setattr__(self, "capability", EngineCapability.parse(self.capability))

        if not precisions:
            raise ConfigurationError("enabled_precisions must not be empty")
        invalid = precisions - KERNEL_PRECISIONS
        if invalid:
            names = ", ".join(sorted(p.value for p in invalid))
            raise ConfigurationError(
                f"Invalid precision given for enabled kernel precision: {names}; "
                "options are [ float | half | int8 | bool ]"
            )
        if self.min_block_size < 1:
            raise ConfigurationError("min_block_size must be >= 1")
        if self.require_full_compilation and (self.torch_executed_ops or self.torch_executed_modules):
            raise ConfigurationError(
                "Ops or modules to run in torch were provided but full compilation was requested. "
                "Remove require_full_compilation to run the specified ops and modules in torch."
            )
        if self.require_full_compilation and self.min_block_size != 1:
            raise ConfigurationError("min_block_size cannot be tuned when require_full_compilation is set")
        for name in ("workspace_size", "max_batch_size"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        if self.num_min_timing_iters < 1 or self.num_avg_timing_iters < 1:
            raise ConfigurationError("timing iteration counts must be >= 1")
        if self.capability is EngineCapability.DLA_STANDALONE:
            if self.device.device_type is not DeviceType.DLA:
                raise ConfigurationError("dla_standalone capability requires the dla device type")
            if self.device.allow_gpu_fallback:
                raise ConfigurationError("dla_standalone capability does not allow GPU fallback")

    @staticmethod
    def create(
        *,
        enabled_precisions: Iterable[Union[str, DType, torch.dtype]] = ("float",),
        device_type: Union[str, DeviceType] = "gpu",
        gpu_id: int = 0,
        dla_core: int = 0,
        allow_gpu_fallback: bool = False,
        capability: Union[str, EngineCapability] = "standard",
        **kwargs: Any,
    ) -> "CompileConfig":
        """Build a config from the string tokens the command line accepts."""

        precisions = frozenset(DType.parse(p) for p in enabled_precisions)
        device = Device(
            device_type=DeviceType.parse(device_type),
            gpu_id=gpu_id,
            dla_core=dla_core,
            allow_gpu_fallback=allow_gpu_fallback,
        )
        return CompileConfig(
            enabled_precisions=precisions,
            device=device,
            capability=EngineCapability.parse(capability),
            **kwargs,
        )

    def is_op_excluded(self, kind: str) -> bool:
        return kind in self.torch_executed_ops

    def is_module_excluded(self, qualname: str, module_type: Union[type, str]) -> bool:
        """True if a module path or its class is listed in ``torch_executed_modules``."""

        if not self.torch_executed_modules:
            return False
        type_name = module_type if isinstance(module_type, str) else _qualified_type_name(module_type)
        short_name = type_name.rsplit(".", 1)[-1]
        names = set(self.torch_executed_modules)
        return bool({qualname, type_name, short_name} & names)


def normalize_op_kind(name: str) -> str:
    """``"aten::relu"`` and ``"aten.relu.default"`` both become ``"relu"``."""

    name = str(name).strip()
    if "::" in name:
        name = name.split("::", 1)[1]
    if name.startswith("aten."):
        name = name[len("aten."):]
    for suffix in (".default", ".Tensor", ".Scalar"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name
