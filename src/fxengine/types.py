"""Value types shared by every compilation stage.

``DType`` and ``TensorFormat`` name the element types and memory layouts an
engine binding may declare. ``ShapeSpec`` describes either one fixed shape or a
``(min, opt, max)`` range, and ``InputSpec`` is the user-declared contract for a
program input.

Input specs can also be written as text, the way they are passed on a command
line::

    (1,3,224,224)
    [(1,3,128,128);(1,3,224,224);(1,3,320,320)]@f16%channels_last
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union

import torch

from .errors import ConfigurationError

Shape = tuple[int, ...]


class DType(enum.Enum):
    FLOAT = "float32"
    HALF = "float16"
    INT8 = "int8"
    INT32 = "int32"
    LONG = "int64"
    DOUBLE = "float64"
    BOOL = "bool"

    @property
    def torch_dtype(self) -> torch.dtype:
        return getattr(torch, self.value)

    @property
    def is_floating(self) -> bool:
        return self in (DType.FLOAT, DType.HALF, DType.DOUBLE)

    @classmethod
    def from_torch(cls, dtype: torch.dtype) -> "DType":
        for member in cls:
            if member.torch_dtype == dtype:
                return member
        raise ConfigurationError(f"Unsupported tensor dtype {dtype}")

    @classmethod
    def parse(cls, token: Union[str, "DType", torch.dtype]) -> "DType":
        if isinstance(token, DType):
            return token
        if isinstance(token, torch.dtype):
            return cls.from_torch(token)
        key = str(token).strip().lower()
        try:
            return _DTYPE_TOKENS[key]
        except KeyError:
            raise ConfigurationError(
                f"Invalid dtype {token!r}, options are "
                "[ float | float32 | f32 | fp32 | half | float16 | f16 | fp16 | char | int8 | i8 "
                "| int | int32 | i32 | long | int64 | i64 | double | float64 | f64 | bool | b ]"
            ) from None


_DTYPE_TOKENS: dict[str, DType] = {
    **dict.fromkeys(("float", "float32", "f32", "fp32"), DType.FLOAT),
    **dict.fromkeys(("half", "float16", "f16", "fp16"), DType.HALF),
    **dict.fromkeys(("char", "int8", "i8"), DType.INT8),
    **dict.fromkeys(("int", "int32", "i32"), DType.INT32),
    **dict.fromkeys(("long", "int64", "i64"), DType.LONG),
    **dict.fromkeys(("double", "float64", "f64"), DType.DOUBLE),
    **dict.fromkeys(("bool", "b"), DType.BOOL),
}


class TensorFormat(enum.Enum):
    CONTIGUOUS = "contiguous"
    CHANNELS_LAST = "channels_last"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, token: Union[str, "TensorFormat"]) -> "TensorFormat":
        if isinstance(token, TensorFormat):
            return token
        key = str(token).strip().lower()
        if key in ("linear", "nchw", "chw", "contiguous"):
            return cls.CONTIGUOUS
        if key in ("nhwc", "hwc", "channels_last", "channel_last"):
            return cls.CHANNELS_LAST
        raise ConfigurationError(
            f"Invalid tensor format {token!r}, options are "
            "[ linear | nchw | chw | contiguous | nhwc | hwc | channels_last ]"
        )


def _as_shape(dims: Iterable[int]) -> Shape:
    shape = tuple(int(d) for d in dims)
    if any(d < 1 for d in shape):
        raise ConfigurationError(f"Shape dimensions must be positive, got {shape}")
    return shape


@dataclass(frozen=True)
class ShapeSpec:
    """A fixed shape, or a per-dimension ``min <= opt <= max`` range."""

    min_shape: Shape
    opt_shape: Shape
    max_shape: Shape

    def __post_init__(self) -> None:
        for name in ("min_shape", "opt_shape", "max_shape"):
            object.__setattr__(self, name, _as_shape(getattr(self, name)))
        shapes = (self.min_shape, self.opt_shape, self.max_shape)
        ranks = {len(s) for s in shapes}
        if len(ranks) != 1:
            raise ConfigurationError(f"min/opt/max shapes must share one rank, got {shapes}")
        for dim, (lo, opt, hi) in enumerate(zip(*shapes)):
            if not lo <= opt <= hi:
                raise ConfigurationError(
                    f"Dimension {dim} violates min <= opt <= max: ({lo}, {opt}, {hi})"
                )

    @staticmethod
    def static(shape: Iterable[int]) -> "ShapeSpec":
        s = tuple(shape)
        return ShapeSpec(s, s, s)

    @staticmethod
    def ranged(min_shape: Iterable[int], opt_shape: Iterable[int], max_shape: Iterable[int]) -> "ShapeSpec":
        return ShapeSpec(tuple(min_shape), tuple(opt_shape), tuple(max_shape))

    @staticmethod
    def from_shapes(shapes: Sequence[Iterable[int]]) -> "ShapeSpec":
        shapes = list(shapes)
        if len(shapes) == 1:
            return ShapeSpec.static(shapes[0])
        if len(shapes) != 3:
            raise ConfigurationError(
                f"Dynamic shapes need exactly three shapes (min, opt, max), got {len(shapes)}"
            )
        return ShapeSpec.ranged(*shapes)

    @property
    def rank(self) -> int:
        return len(self.opt_shape)

    @property
    def is_dynamic(self) -> bool:
        return self.min_shape != self.max_shape

    @property
    def dynamic_dims(self) -> tuple[int, ...]:
        return tuple(i for i, (lo, hi) in enumerate(zip(self.min_shape, self.max_shape)) if lo != hi)

    def contains(self, shape: Iterable[int]) -> bool:
        shape = tuple(shape)
        if len(shape) != self.rank:
            return False
        return all(lo <= d <= hi for d, lo, hi in zip(shape, self.min_shape, self.max_shape))

    def __str__(self) -> str:
        if not self.is_dynamic:
            return str(self.opt_shape)
        return f"[{self.min_shape}; {self.opt_shape}; {self.max_shape}]"


@dataclass(frozen=True)
class InputSpec:
    """Declared dtype, layout and shape range for one program input."""

    shape: ShapeSpec
    dtype: DType = DType.FLOAT
    format: TensorFormat = TensorFormat.CONTIGUOUS

    def __post_init__(self) -> None:
        if self.format is TensorFormat.CHANNELS_LAST and self.shape.rank != 4:
            raise ConfigurationError(
                f"channels_last format needs a rank-4 shape, got rank {self.shape.rank}"
            )

    @staticmethod
    def static(shape: Iterable[int], dtype="float32", format="contiguous") -> "InputSpec":
        return InputSpec(ShapeSpec.static(shape), DType.parse(dtype), TensorFormat.parse(format))

    @staticmethod
    def ranged(
        min_shape: Iterable[int],
        opt_shape: Iterable[int],
        max_shape: Iterable[int],
        dtype="float32",
        format="contiguous",
    ) -> "InputSpec":
        return InputSpec(
            ShapeSpec.ranged(min_shape, opt_shape, max_shape),
            DType.parse(dtype),
            TensorFormat.parse(format),
        )

    @staticmethod
    def parse(text: str) -> "InputSpec":
        """Parse ``SHAPES[@dtype][%format]`` where SHAPES is ``(..)`` or ``[(..);(..);(..)]``."""

        match = _SPEC_RE.match(text)
        if match is None:
            raise ConfigurationError(
                f"Cannot parse input spec {text!r}. Dimensions should be written as "
                "\"(N,..,C,H,W)\" or \"[(MIN_N,..);(OPT_N,..);(MAX_N,..)]\", optionally followed "
                "by @dtype and %format, e.g. \"(3,3,300,300)@f32%channels_last\""
            )
        shapes_text = match.group("shapes")
        if shapes_text.startswith("["):
            parts = shapes_text[1:-1].split(";")
            if len(parts) != 3:
                raise ConfigurationError(
                    f"Dynamic shapes need three sets of dimensions delimited by semicolons, got {shapes_text!r}"
                )
            shape = ShapeSpec.ranged(*(_parse_dims(p) for p in parts))
        else:
            shape = ShapeSpec.static(_parse_dims(shapes_text))
        dtype = DType.parse(match.group("dtype")) if match.group("dtype") else DType.FLOAT
        fmt = TensorFormat.parse(match.group("format")) if match.group("format") else TensorFormat.CONTIGUOUS
        return InputSpec(shape, dtype, fmt)

    def example(self, which: str = "opt", *, device: Optional[torch.device] = None) -> torch.Tensor:
        """A zero-filled tensor with the min/opt/max shape of this spec."""

        shape = {"min": self.shape.min_shape, "opt": self.shape.opt_shape, "max": self.shape.max_shape}[which]
        t = torch.zeros(shape, dtype=self.dtype.torch_dtype, device=device)
        if self.format is TensorFormat.CHANNELS_LAST:
            t = t.contiguous(memory_format=torch.channels_last)
        return t

    def __str__(self) -> str:
        return f"Input(shape={self.shape}, dtype={self.dtype.value}, format={self.format.value})"


_SPEC_RE = re.compile(
    r"^\s*(?P<shapes>\([^()]*\)|\[[^\[\]]*\])\s*(?:@\s*(?P<dtype>[A-Za-z0-9_]+))?\s*(?:%\s*(?P<format>[A-Za-z_]+))?\s*$"
)


def _parse_dims(text: str) -> Shape:
    text = text.strip()
    if not (text.startswith("(") and text.endswith(")")):
        raise ConfigurationError(
            f"Shapes need dimensions delimited by comma in parentheses, e.g. \"(3,3,200,200)\", got {text!r}"
        )
    body = text[1:-1].strip()
    if not body:
        raise ConfigurationError(f"Empty shape {text!r}")
    tokens = [tok.strip() for tok in body.split(",")]
    if not all(tokens):
        raise ConfigurationError(f"Empty dimension in {text!r}")
    try:
        return _as_shape(int(tok) for tok in tokens)
    except ValueError as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(f"Non-integer dimension in {text!r}") from e


def as_input_spec(spec: Union[InputSpec, str, Sequence[int]]) -> InputSpec:
    if isinstance(spec, InputSpec):
        return spec
    if isinstance(spec, str):
        return InputSpec.parse(spec)
    return InputSpec.static(spec)


def truncated_dtype(dtype: torch.dtype) -> torch.dtype:
    """Map 64-bit dtypes to their 32-bit counterparts."""

    if dtype == torch.int64:
        return torch.int32
    if dtype == torch.float64:
        return torch.float32
    return dtype
