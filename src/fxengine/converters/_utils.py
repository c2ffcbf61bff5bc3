from __future__ import annotations

from typing import Any

import torch.fx as fx

from ..errors import ConverterContractError
from ..ir import COMPUTE_OPS, tensor_meta
from ._registry import is_number

_MISSING = object()


def arg(node: fx.Node, index: int, name: str, default: Any = _MISSING) -> Any:
    """Positional-or-keyword argument lookup."""

    if name in node.kwargs:
        return node.kwargs[name]
    if len(node.args) > index:
        return node.args[index]
    if default is _MISSING:
        raise ConverterContractError(f"{node.name}: missing argument {name!r}")
    return default


def input_node(node: fx.Node) -> Any:
    return arg(node, 0, "input")


def is_inplace(node: fx.Node) -> bool:
    if node.op == "call_method":
        name = str(node.target)
        if name.endswith("_") and not name.endswith("__"):
            return True
    return bool(node.kwargs.get("inplace", False))


def inplace_safe(node: fx.Node) -> bool:
    """In-place calls convert only if nothing else reads the overwritten value."""

    if not is_inplace(node):
        return True
    target = input_node(node)
    if not isinstance(target, fx.Node) or target.op not in COMPUTE_OPS:
        return False
    return set(target.users) == {node}


def is_floating(value: Any) -> bool:
    meta = tensor_meta(value)
    return meta is not None and meta.dtype.is_floating_point


def rank(value: Any) -> int:
    return len(tensor_meta(value).shape)


def static_ints(value: Any) -> bool:
    """True for an int or a (nested) sequence of ints known at trace time."""

    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, (list, tuple)):
        return all(static_ints(v) for v in value)
    return False


def operands_ok(*values: Any) -> bool:
    """Each value is a graph tensor or a plain number, and at least one is a tensor."""

    if not any(isinstance(v, fx.Node) for v in values):
        return False
    return all(isinstance(v, fx.Node) or is_number(v) for v in values)


def dims_arg(node: fx.Node, name: str) -> Any:
    """Dims given as ``f(x, dims)`` or as varargs ``x.f(*dims)``."""

    if name in node.kwargs:
        return node.kwargs[name]
    rest = node.args[1:]
    if len(rest) == 1 and isinstance(rest[0], (list, tuple)):
        return tuple(rest[0])
    return tuple(rest)
