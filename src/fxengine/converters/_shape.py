from __future__ import annotations

import torch.fx as fx

from ..network import NetworkTensor
from ._context import ConversionContext
from ._registry import is_number, register
from ._utils import arg, dims_arg, input_node, static_ints


def _shuffle(ctx: ConversionContext, node: fx.Node, op: str, **params) -> NetworkTensor:
    return ctx.add_layer("shuffle", [ctx.get_tensor(input_node(node))], op=op, **params)


def _target_shape(node: fx.Node):
    if node.op == "call_method":
        return dims_arg(node, "shape")
    return tuple(arg(node, 1, "shape"))


def _reshape_supported(node: fx.Node) -> bool:
    return isinstance(input_node(node), fx.Node) and static_ints(_target_shape(node))


@register("reshape", supports=_reshape_supported)
def convert_reshape(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _shuffle(ctx, node, "reshape", shape=tuple(_target_shape(node)))


def _flatten_supported(node: fx.Node) -> bool:
    return static_ints(arg(node, 1, "start_dim", 0)) and static_ints(arg(node, 2, "end_dim", -1))


@register("flatten", supports=_flatten_supported)
def convert_flatten(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _shuffle(
        ctx, node, "flatten", start_dim=arg(node, 1, "start_dim", 0), end_dim=arg(node, 2, "end_dim", -1)
    )


def _permute_supported(node: fx.Node) -> bool:
    return static_ints(dims_arg(node, "dims"))


@register("permute", supports=_permute_supported)
def convert_permute(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _shuffle(ctx, node, "permute", dims=tuple(dims_arg(node, "dims")))


def _transpose_supported(node: fx.Node) -> bool:
    return static_ints(arg(node, 1, "dim0")) and static_ints(arg(node, 2, "dim1"))


@register("transpose", supports=_transpose_supported)
def convert_transpose(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _shuffle(ctx, node, "transpose", dim0=arg(node, 1, "dim0"), dim1=arg(node, 2, "dim1"))


def _dim_supported(node: fx.Node) -> bool:
    return static_ints(arg(node, 1, "dim", None))


@register("unsqueeze", supports=_dim_supported)
def convert_unsqueeze(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _shuffle(ctx, node, "unsqueeze", dim=arg(node, 1, "dim"))


# squeeze without a dim depends on which extents are 1 at run time
@register("squeeze", supports=_dim_supported)
def convert_squeeze(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    dim = arg(node, 1, "dim")
    return _shuffle(ctx, node, "squeeze", dim=tuple(dim) if isinstance(dim, list) else dim)


def _contiguous_supported(node: fx.Node) -> bool:
    return len(node.args) == 1 and not node.kwargs


@register("contiguous", supports=_contiguous_supported)
def convert_contiguous(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return ctx.add_layer("identity", [ctx.get_tensor(input_node(node))])


def _cat_supported(node: fx.Node) -> bool:
    tensors = arg(node, 0, "tensors")
    return (
        isinstance(tensors, (list, tuple))
        and len(tensors) > 0
        and all(isinstance(t, fx.Node) for t in tensors)
        and static_ints(arg(node, 1, "dim", 0))
    )


@register("cat", supports=_cat_supported)
def convert_cat(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    tensors = [ctx.get_tensor(t) for t in arg(node, 0, "tensors")]
    return ctx.add_layer("concatenation", tensors, dim=arg(node, 1, "dim", 0))


def _pad_supported(node: fx.Node) -> bool:
    value = arg(node, 3, "value", None)
    return (
        arg(node, 2, "mode", "constant") == "constant"
        and static_ints(arg(node, 1, "pad"))
        and (value is None or is_number(value))
    )


@register("pad", supports=_pad_supported)
def convert_pad(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    value = arg(node, 3, "value", None)
    return ctx.add_layer(
        "padding",
        [ctx.get_tensor(input_node(node))],
        pad=tuple(arg(node, 1, "pad")),
        value=0.0 if value is None else float(value),
    )
