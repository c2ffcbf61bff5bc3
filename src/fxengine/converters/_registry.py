"""Op-kind -> converter registry.

A converter turns one fx node into network layers. Registration is explicit;
support queries never raise.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import torch.fx as fx

from ..errors import ConverterContractError
from ..ir import tensor_meta
from ..network import NetworkTensor
from ..types import truncated_dtype

if TYPE_CHECKING:
    from ._context import ConversionContext

ConvertFn = Callable[["ConversionContext", fx.Node], NetworkTensor]
SupportFn = Callable[[fx.Node], bool]


@dataclass(frozen=True)
class ConverterEntry:
    kind: str
    convert: ConvertFn
    supports: Optional[SupportFn] = None


def _is_runtime_tensor(arg: fx.Node) -> bool:
    return tensor_meta(arg) is not None


class ConverterRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, ConverterEntry] = {}
        self._fallback: set[str] = set()

    def register(self, *kinds: str, supports: Optional[SupportFn] = None) -> Callable[[ConvertFn], ConvertFn]:
        """Decorator registering ``fn`` as the converter for every kind in ``kinds``."""

        def deco(fn: ConvertFn) -> ConvertFn:
            for kind in kinds:
                if kind in self._entries or kind in self._fallback:
                    raise ConverterContractError(f"Converter for {kind!r} registered twice")
                self._entries[kind] = ConverterEntry(kind, fn, supports)
            return fn

        return deco

    def register_fallback(self, *kinds: str) -> None:
        """Declare kinds that always run in torch."""

        for kind in kinds:
            if kind in self._entries:
                raise ConverterContractError(f"{kind!r} already has a converter")
            self._fallback.add(kind)

    def is_fallback(self, kind: str) -> bool:
        return kind in self._fallback

    @property
    def kinds(self) -> frozenset[str]:
        return frozenset(self._entries)

    def unsupported_reason(self, node: fx.Node, kind: str) -> Optional[str]:
        """Why ``node`` cannot be converted, or None if it can."""

        if kind in self._fallback:
            return "pure fallback op"
        entry = self._entries.get(kind)
        if entry is None:
            return "no converter"
        if tensor_meta(node) is None:
            return "non-tensor output"
        for inp in node.all_input_nodes:
            if not _is_runtime_tensor(inp):
                return f"non-tensor operand {inp.name}"
        if entry.supports is not None:
            try:
                ok = entry.supports(node)
            except ConverterContractError:
                ok = False
            if not ok:
                return "unsupported configuration"
        return None

    def is_supported(self, node: fx.Node, kind: str) -> bool:
        return self.unsupported_reason(node, kind) is None

    def convert(self, ctx: "ConversionContext", node: fx.Node, kind: str) -> NetworkTensor:
        reason = self.unsupported_reason(node, kind)
        if reason is not None:
            raise ConverterContractError(f"Cannot convert {node.name} ({kind}): {reason}")

        ctx.node = node
        try:
            out = self._entries[kind].convert(ctx, node)
        finally:
            ctx.node = None
        if not isinstance(out, NetworkTensor):
            raise ConverterContractError(
                f"Converter for {kind!r} must return exactly one network tensor for {node.name}, got {out!r}"
            )

        meta = tensor_meta(node)
        expected, actual = meta.dtype, out.dtype
        if ctx.config.truncate_long_and_double:
            expected, actual = truncated_dtype(expected), truncated_dtype(actual)
        if tuple(out.shape) != tuple(meta.shape) or expected != actual:
            raise ConverterContractError(
                f"Converter for {kind!r} produced {tuple(out.shape)}/{out.dtype} for {node.name}, "
                f"expected {tuple(meta.shape)}/{meta.dtype}"
            )
        ctx.value_map[node] = out
        return out

    def copy(self) -> "ConverterRegistry":
        other = ConverterRegistry()
        other._entries = dict(self._entries)
        other._fallback = set(self._fallback)
        return other


def is_number(value: object) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, complex)


DEFAULT_REGISTRY = ConverterRegistry()
register = DEFAULT_REGISTRY.register
