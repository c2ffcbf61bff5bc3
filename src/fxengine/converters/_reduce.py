from __future__ import annotations

import torch.fx as fx

from ..network import NetworkTensor
from ._context import ConversionContext
from ._registry import register
from ._utils import arg, input_node, is_floating, static_ints


def _softmax_supported(node: fx.Node) -> bool:
    return (
        static_ints(arg(node, 1, "dim", None))
        and node.kwargs.get("dtype") is None
        and is_floating(input_node(node))
    )


@register("softmax", supports=_softmax_supported)
def convert_softmax(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    x = ctx.get_tensor(input_node(node))
    return ctx.add_layer("softmax", [x], dim=arg(node, 1, "dim"))


def _dims(node: fx.Node):
    dims = arg(node, 1, "dim", None)
    if isinstance(dims, list):
        dims = tuple(dims)
    return dims


def _reduce_supported(node: fx.Node) -> bool:
    dims = _dims(node)
    return (
        (dims is None or static_ints(dims))
        and isinstance(arg(node, 2, "keepdim", False), bool)
        and node.kwargs.get("dtype") is None
    )


@register("sum", supports=_reduce_supported)
def convert_sum(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    x = ctx.get_tensor(input_node(node))
    return ctx.add_layer("reduce", [x], op="sum", dims=_dims(node), keepdim=arg(node, 2, "keepdim", False))


def _mean_supported(node: fx.Node) -> bool:
    return is_floating(input_node(node)) and _reduce_supported(node)


@register("mean", supports=_mean_supported)
def convert_mean(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    x = ctx.get_tensor(input_node(node))
    return ctx.add_layer("reduce", [x], op="mean", dims=_dims(node), keepdim=arg(node, 2, "keepdim", False))
