"""Numerical comparison of a compiled program against its source module.

Both programs run on the same random inputs, sampled at each input's opt shape
uniformly in [-5, 5). An output passes when

    max|a - b| <= threshold * max(max|a|, max|b|)

Deviations are reported and logged, never raised: the compiled artifact is
still usable and the caller decides what to do with it.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import torch

from .config import CompileConfig
from .errors import ConfigurationError
from .types import DType, InputSpec, TensorFormat

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 2e-5
INPUT_LOW, INPUT_HIGH = -5.0, 5.0


class FidelityStatus(enum.Enum):
    PASSED = "passed"
    DEVIATION = "deviation"
    SKIPPED_PRECISION = "skipped_precision"
    SKIPPED_BY_USER = "skipped_by_user"


@dataclass(frozen=True)
class OutputComparison:
    index: int
    max_abs_diff: float
    max_magnitude: float
    passed: bool


@dataclass(frozen=True)
class FidelityReport:
    status: FidelityStatus
    threshold: float
    comparisons: tuple[OutputComparison, ...] = ()
    # Set when a program raised on the sampled inputs.
    error: Optional[str] = None

    @property
    def checked(self) -> bool:
        return self.status in (FidelityStatus.PASSED, FidelityStatus.DEVIATION)

    @property
    def passed(self) -> bool:
        return self.status is FidelityStatus.PASSED


def within_threshold(a: torch.Tensor, b: torch.Tensor, threshold: float) -> OutputComparison:
    """Compare two outputs; ``b`` is reshaped to ``a`` when only the layout differs."""

    a64, b64 = a.detach().double(), b.detach().double().to(a.device)
    if a64.shape != b64.shape:
        if a64.numel() != b64.numel():
            return OutputComparison(0, math.inf, math.nan, False)
        b64 = b64.reshape_as(a64)
    if a64.numel() == 0:
        return OutputComparison(0, 0.0, 0.0, True)
    diff = (a64 - b64).abs().max().item()
    magnitude = max(a64.abs().max().item(), b64.abs().max().item())
    return OutputComparison(0, diff, magnitude, diff <= threshold * magnitude)


def sample_inputs(
    specs: Sequence[InputSpec], *, seed: int = 0, device: Optional[torch.device] = None
) -> list[torch.Tensor]:
    gen = torch.Generator().manual_seed(seed)
    inputs = []
    for spec in specs:
        shape = spec.shape.opt_shape
        dtype = spec.dtype.torch_dtype
        if spec.dtype.is_floating:
            t = (torch.rand(shape, generator=gen) * (INPUT_HIGH - INPUT_LOW) + INPUT_LOW).to(dtype)
        elif spec.dtype is DType.BOOL:
            t = torch.randint(0, 2, shape, generator=gen).bool()
        else:
            t = torch.randint(int(INPUT_LOW), int(INPUT_HIGH), shape, generator=gen).to(dtype)
        if spec.format is TensorFormat.CHANNELS_LAST:
            t = t.contiguous(memory_format=torch.channels_last)
        inputs.append(t.to(device) if device is not None else t)
    return inputs


def original_precision(specs: Sequence[InputSpec]) -> DType:
    """The floating dtype the source program computes in."""

    for spec in specs:
        if spec.dtype.is_floating:
            return spec.dtype
    return DType.FLOAT


def _output_tensors(out: Any) -> list[torch.Tensor]:
    """Tensor leaves of a (possibly nested) program output, dict values in insertion order."""

    if isinstance(out, torch.Tensor):
        return [out]
    if isinstance(out, dict):
        out = list(out.values())
    if isinstance(out, (list, tuple)):
        return [t for item in out for t in _output_tensors(item)]
    return []


def check_fidelity(
    reference: torch.nn.Module,
    program: torch.nn.Module,
    specs: Sequence[InputSpec],
    config: CompileConfig,
    *,
    threshold: float = DEFAULT_THRESHOLD,
    skip: bool = False,
    seed: int = 0,
    device: Optional[torch.device] = None,
) -> FidelityReport:
    if threshold < 0:
        raise ConfigurationError("threshold must be >= 0")
    if skip:
        logger.warning("Threshold check skipped, numerical precision is not checked")
        return FidelityReport(FidelityStatus.SKIPPED_BY_USER, threshold)
    if config.enabled_precisions != frozenset({original_precision(specs)}):
        logger.warning("Due to change in operating data type, numerical precision is not checked")
        return FidelityReport(FidelityStatus.SKIPPED_PRECISION, threshold)

    inputs = sample_inputs(specs, seed=seed, device=device)
    try:
        with torch.no_grad():
            expected = reference(*[x.clone() for x in inputs])
        actual = program(*[x.clone() for x in inputs])
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.warning("Numerical precision could not be checked, running on sampled inputs failed: %s", error)
        return FidelityReport(FidelityStatus.DEVIATION, threshold, error=error)

    expected_leaves = _output_tensors(expected)
    actual_leaves = _output_tensors(actual)
    if len(expected_leaves) != len(actual_leaves):
        logger.warning(
            "Compiled program returned %d output(s), source returned %d", len(actual_leaves), len(expected_leaves)
        )
        return FidelityReport(FidelityStatus.DEVIATION, threshold)

    comparisons = []
    for i, (a, b) in enumerate(zip(expected_leaves, actual_leaves)):
        result = within_threshold(a, b, threshold)
        comparisons.append(dataclasses.replace(result, index=i))
        logger.debug("Max Difference: %g", result.max_abs_diff)
        logger.debug("Acceptable Threshold: %g", threshold)
        if not result.passed:
            logger.warning("Maximum numerical deviation for output %d exceeds set threshold (%g)", i, threshold)

    passed = all(c.passed for c in comparisons)
    return FidelityReport(FidelityStatus.PASSED if passed else FidelityStatus.DEVIATION, threshold, tuple(comparisons))
