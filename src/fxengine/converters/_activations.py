from __future__ import annotations

import torch.fx as fx

from ..network import NetworkTensor
from ._context import ConversionContext
from ._registry import is_number, register
from ._utils import arg, inplace_safe, input_node, is_floating


def _float_activation(node: fx.Node) -> bool:
    return is_floating(input_node(node)) and inplace_safe(node)


def _activation(ctx: ConversionContext, node: fx.Node, kind: str, **params) -> NetworkTensor:
    x = ctx.get_tensor(input_node(node))
    return ctx.add_layer("activation", [x], type=kind, **params)


@register("relu", "relu_", supports=_float_activation)
def convert_relu(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _activation(ctx, node, "relu")


@register("sigmoid", "sigmoid_", supports=_float_activation)
def convert_sigmoid(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _activation(ctx, node, "sigmoid")


@register("tanh", "tanh_", supports=_float_activation)
def convert_tanh(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _activation(ctx, node, "tanh")


@register("leaky_relu", supports=_float_activation)
def convert_leaky_relu(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _activation(ctx, node, "leaky_relu", alpha=float(arg(node, 1, "negative_slope", 0.01)))


@register("elu", supports=_float_activation)
def convert_elu(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _activation(ctx, node, "elu", alpha=float(arg(node, 1, "alpha", 1.0)))


@register("hardtanh", supports=_float_activation)
def convert_hardtanh(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    lo = float(arg(node, 1, "min_val", -1.0))
    hi = float(arg(node, 2, "max_val", 1.0))
    return _activation(ctx, node, "clip", alpha=lo, beta=hi)


def _clamp_supported(node: fx.Node) -> bool:
    lo, hi = arg(node, 1, "min", None), arg(node, 2, "max", None)
    if lo is None and hi is None:
        return False
    bounds_ok = all(b is None or is_number(b) for b in (lo, hi))
    return bounds_ok and _float_activation(node)


@register("clamp", "clamp_", supports=_clamp_supported)
def convert_clamp(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    lo, hi = arg(node, 1, "min", None), arg(node, 2, "max", None)
    return _activation(
        ctx, node, "clip", alpha=None if lo is None else float(lo), beta=None if hi is None else float(hi)
    )


def _gelu_supported(node: fx.Node) -> bool:
    return arg(node, 1, "approximate", "none") in ("none", "tanh") and _float_activation(node)


@register("gelu", supports=_gelu_supported)
def convert_gelu(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    form = "gelu_tanh" if arg(node, 1, "approximate", "none") == "tanh" else "gelu_erf"
    return _activation(ctx, node, form)


def _prelu_supported(node: fx.Node) -> bool:
    return isinstance(arg(node, 1, "weight"), fx.Node) and _float_activation(node)


@register("prelu", supports=_prelu_supported)
def convert_prelu(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    x = ctx.get_tensor(input_node(node))
    slope = ctx.get_tensor(arg(node, 1, "weight"))
    return ctx.add_layer("parametric_relu", [x, slope])
