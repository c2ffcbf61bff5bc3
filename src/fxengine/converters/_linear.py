from __future__ import annotations

import torch.fx as fx

from ..network import NetworkTensor
from ._context import ConversionContext
from ._registry import register
from ._utils import arg, rank, static_ints


def _matmul_supported(node: fx.Node) -> bool:
    return isinstance(arg(node, 0, "input"), fx.Node) and isinstance(arg(node, 1, "other"), fx.Node)


@register("matmul", "mm", "bmm", supports=_matmul_supported)
def convert_matmul(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    a = ctx.get_tensor(arg(node, 0, "input"))
    b = ctx.get_tensor(arg(node, 1, "other"))
    return ctx.add_layer("matrix_multiply", [a, b])


def _linear_supported(node: fx.Node) -> bool:
    weight = arg(node, 1, "weight")
    bias = arg(node, 2, "bias", None)
    return (
        isinstance(arg(node, 0, "input"), fx.Node)
        and isinstance(weight, fx.Node)
        and rank(weight) == 2
        and (bias is None or isinstance(bias, fx.Node))
    )


@register("linear", supports=_linear_supported)
def convert_linear(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    x = ctx.get_tensor(arg(node, 0, "input"))
    weight = ctx.get_tensor(arg(node, 1, "weight"))
    out = ctx.add_layer("matrix_multiply", [x, weight], transpose_b=True)
    bias = arg(node, 2, "bias", None)
    if bias is not None:
        out = ctx.add_layer("elementwise", [out, ctx.get_tensor(bias)], op="sum")
    return out


def _conv_supported(node: fx.Node) -> bool:
    weight = arg(node, 1, "weight")
    bias = arg(node, 2, "bias", None)
    if not (isinstance(weight, fx.Node) and weight.op == "get_attr"):
        return False
    if bias is not None and not (isinstance(bias, fx.Node) and bias.op == "get_attr"):
        return False
    padding = arg(node, 4, "padding", 0)
    return (
        static_ints(arg(node, 3, "stride", 1))
        and (padding in ("same", "valid") or static_ints(padding))
        and static_ints(arg(node, 5, "dilation", 1))
        and static_ints(arg(node, 6, "groups", 1))
    )


def _convert_conv(ctx: ConversionContext, node: fx.Node, nd: int) -> NetworkTensor:
    inputs = [ctx.get_tensor(arg(node, 0, "input")), ctx.get_tensor(arg(node, 1, "weight"))]
    bias = arg(node, 2, "bias", None)
    if bias is not None:
        inputs.append(ctx.get_tensor(bias))
    return ctx.add_layer(
        "convolution",
        inputs,
        nd=nd,
        stride=arg(node, 3, "stride", 1),
        padding=arg(node, 4, "padding", 0),
        dilation=arg(node, 5, "dilation", 1),
        groups=arg(node, 6, "groups", 1),
    )


@register("conv1d", supports=_conv_supported)
def convert_conv1d(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _convert_conv(ctx, node, 1)


@register("conv2d", supports=_conv_supported)
def convert_conv2d(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _convert_conv(ctx, node, 2)


@register("conv3d", supports=_conv_supported)
def convert_conv3d(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _convert_conv(ctx, node, 3)
