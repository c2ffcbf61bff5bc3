from __future__ import annotations

import torch.fx as fx

from ..errors import ConverterContractError
from ..network import NetworkTensor
from ._context import ConversionContext
from ._registry import register
from ._utils import arg, inplace_safe, operands_ok


def _tensor_of(ctx: ConversionContext, *values) -> NetworkTensor:
    for v in values:
        if isinstance(v, fx.Node):
            return ctx.get_tensor(v)
    raise ConverterContractError(f"{ctx.origin}: no tensor operand")


def _binary(ctx: ConversionContext, node: fx.Node, op: str) -> NetworkTensor:
    a, b = arg(node, 0, "input"), arg(node, 1, "other")
    like = _tensor_of(ctx, a, b)
    return ctx.add_layer("elementwise", [ctx.operand(a, like), ctx.operand(b, like)], op=op)


def _binary_supported(node: fx.Node) -> bool:
    return operands_ok(arg(node, 0, "input"), arg(node, 1, "other")) and inplace_safe(node)


def _alpha_supported(node: fx.Node) -> bool:
    alpha = arg(node, 2, "alpha", 1)
    return not isinstance(alpha, fx.Node) and _binary_supported(node)


def _add_or_sub(ctx: ConversionContext, node: fx.Node, op: str) -> NetworkTensor:
    a, b = arg(node, 0, "input"), arg(node, 1, "other")
    alpha = arg(node, 2, "alpha", 1)
    like = _tensor_of(ctx, a, b)
    ta, tb = ctx.operand(a, like), ctx.operand(b, like)
    if alpha != 1:
        tb = ctx.add_layer("elementwise", [tb, ctx.scalar(alpha, like=tb)], op="prod")
    return ctx.add_layer("elementwise", [ta, tb], op=op)


@register("add", "add_", supports=_alpha_supported)
def convert_add(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _add_or_sub(ctx, node, "sum")


@register("sub", "sub_", supports=_alpha_supported)
def convert_sub(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _add_or_sub(ctx, node, "sub")


@register("mul", "mul_", supports=_binary_supported)
def convert_mul(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _binary(ctx, node, "prod")


def _div_supported(node: fx.Node) -> bool:
    return node.kwargs.get("rounding_mode") is None and _binary_supported(node)


@register("div", "div_", supports=_div_supported)
def convert_div(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _binary(ctx, node, "div")


def _pow_supported(node: fx.Node) -> bool:
    return operands_ok(arg(node, 0, "input"), arg(node, 1, "exponent"))


@register("pow", supports=_pow_supported)
def convert_pow(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    base, exponent = arg(node, 0, "input"), arg(node, 1, "exponent")
    like = _tensor_of(ctx, base, exponent)
    return ctx.add_layer("elementwise", [ctx.operand(base, like), ctx.operand(exponent, like)], op="pow")


def _both_tensors(node: fx.Node) -> bool:
    return isinstance(arg(node, 0, "input"), fx.Node) and isinstance(arg(node, 1, "other"), fx.Node)


@register("maximum", supports=_both_tensors)
def convert_maximum(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _binary(ctx, node, "max")


@register("minimum", supports=_both_tensors)
def convert_minimum(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
    return _binary(ctx, node, "min")


def _unary_supported(node: fx.Node) -> bool:
    return isinstance(arg(node, 0, "input"), fx.Node)


def _make_unary(op: str):
    def convert(ctx: ConversionContext, node: fx.Node) -> NetworkTensor:
        return ctx.add_layer("unary", [ctx.get_tensor(arg(node, 0, "input"))], op=op)

    convert.__name__ = f"convert_{op}"
    return convert


for _op in ("exp", "log", "sqrt", "rsqrt", "abs", "neg", "erf"):
    register(_op, supports=_unary_supported)(_make_unary(_op))
