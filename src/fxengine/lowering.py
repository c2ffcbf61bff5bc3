"""Lowering: graph-to-graph rewrites that canonicalize a traced program.

Each pass takes a GraphModule, rewrites it in place and reports whether it
changed anything. Passes are idempotent: a second run reports no change.
A pass that cannot prove a rewrite preserves semantics leaves the node alone;
a pass that meets a graph it does not understand raises ``LoweringError``.
"""

from __future__ import annotations

import functools
import logging
import math
import operator
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import torch
import torch.fx as fx
import torch.nn as nn
import torch.nn.functional as F

from .config import CompileConfig
from .errors import LoweringError
from .ir import COMPUTE_OPS, MODULE_STACK_KEY, fetch_attr, mutated_attributes, mutates, node_kind

logger = logging.getLogger(__name__)

PassFn = Callable[[fx.GraphModule], bool]

_SKIP = object()
_REQUIRED = object()


@dataclass(frozen=True)
class LoweringPass:
    name: str
    fn: PassFn

    def __call__(self, gm: fx.GraphModule) -> bool:
        return bool(self.fn(gm))


class LoweringPipeline:
    """An ordered list of lowering passes."""

    def __init__(self, passes: Sequence[LoweringPass]) -> None:
        self._passes = tuple(passes)

    @property
    def passes(self) -> tuple[LoweringPass, ...]:
        return self._passes

    def run(self, gm: fx.GraphModule) -> list[str]:
        """Apply every pass once; return the names of passes that changed the graph."""

        changed: list[str] = []
        for p in self._passes:
            try:
                fired = p(gm)
            except LoweringError:
                raise
            except Exception as e:
                raise LoweringError(f"Lowering pass {p.name!r} failed: {e}") from e
            try:
                gm.graph.lint()
            except RuntimeError as e:
                raise LoweringError(f"Lowering pass {p.name!r} left a malformed graph: {e}") from e
            if fired:
                changed.append(p.name)
                gm.recompile()
            logger.debug("lowering pass %s: %s", p.name, "changed" if fired else "no change")
        return changed


class _Emitter:
    """Creates nodes that inherit the module scope of the node they replace."""

    def __init__(self, graph: fx.Graph, origin: fx.Node) -> None:
        self._graph = graph
        self._stack = origin.meta.get(MODULE_STACK_KEY, ())

    def _tag(self, node: fx.Node) -> fx.Node:
        node.meta[MODULE_STACK_KEY] = self._stack
        return node

    def get_attr(self, target: str) -> fx.Node:
        return self._tag(self._graph.get_attr(target))

    def call(self, fn: Callable[..., Any], args: tuple, kwargs: Optional[dict] = None) -> fx.Node:
        return self._tag(self._graph.call_function(fn, args, kwargs or {}))


def _replace(graph: fx.Graph, node: fx.Node, new: fx.Node) -> None:
    node.replace_all_uses_with(new)
    graph.erase_node(node)


# ----------------------------------------------------------------------------
# normalize_module_calls
# ----------------------------------------------------------------------------


def _rewrite_linear(em: _Emitter, node: fx.Node, mod: nn.Linear, x: fx.Node) -> Any:
    weight = em.get_attr(f"{node.target}.weight")
    bias = em.get_attr(f"{node.target}.bias") if mod.bias is not None else None
    return em.call(F.linear, (x, weight, bias))


_CONV_FUNCTIONS = {1: F.conv1d, 2: F.conv2d, 3: F.conv3d}


def _rewrite_conv(em: _Emitter, node: fx.Node, mod: nn.modules.conv._ConvNd, x: fx.Node) -> Any:
    if mod.padding_mode != "zeros":
        return _SKIP
    fn = _CONV_FUNCTIONS[mod.weight.dim() - 2]
    weight = em.get_attr(f"{node.target}.weight")
    bias = em.get_attr(f"{node.target}.bias") if mod.bias is not None else None
    return em.call(fn, (x, weight, bias, mod.stride, mod.padding, mod.dilation, mod.groups))


def _rewrite_dropout(em: _Emitter, node: fx.Node, mod: nn.Module, x: fx.Node) -> Any:
    # Dropout is the identity only at inference time.
    return _SKIP if mod.training else None


def _rewrite_softmax(em: _Emitter, node: fx.Node, mod: nn.Softmax, x: fx.Node) -> Any:
    if mod.dim is None:
        return _SKIP
    return em.call(F.softmax, (x,), {"dim": mod.dim})


_MODULE_REWRITES: list[tuple[type, Callable[..., Any]]] = [
    (nn.Identity, lambda em, node, mod, x: None),
    (nn.modules.dropout._DropoutNd, _rewrite_dropout),
    (nn.ReLU, lambda em, node, mod, x: em.call(F.relu, (x,), {"inplace": mod.inplace})),
    (nn.Sigmoid, lambda em, node, mod, x: em.call(torch.sigmoid, (x,))),
    (nn.Tanh, lambda em, node, mod, x: em.call(torch.tanh, (x,))),
    (
        nn.LeakyReLU,
        lambda em, node, mod, x: em.call(
            F.leaky_relu, (x,), {"negative_slope": mod.negative_slope, "inplace": mod.inplace}
        ),
    ),
    (nn.ELU, lambda em, node, mod, x: em.call(F.elu, (x,), {"alpha": mod.alpha, "inplace": mod.inplace})),
    (
        nn.Hardtanh,
        lambda em, node, mod, x: em.call(
            F.hardtanh, (x,), {"min_val": mod.min_val, "max_val": mod.max_val, "inplace": mod.inplace}
        ),
    ),
    (
        nn.GELU,
        lambda em, node, mod, x: em.call(F.gelu, (x,), {"approximate": getattr(mod, "approximate", "none")}),
    ),
    (nn.SiLU, lambda em, node, mod, x: em.call(F.silu, (x,), {"inplace": mod.inplace})),
    (nn.PReLU, lambda em, node, mod, x: em.call(F.prelu, (x, em.get_attr(f"{node.target}.weight")))),
    (nn.Softmax, _rewrite_softmax),
    (
        nn.Flatten,
        lambda em, node, mod, x: em.call(torch.flatten, (x,), {"start_dim": mod.start_dim, "end_dim": mod.end_dim}),
    ),
    (nn.Linear, _rewrite_linear),
    (nn.Conv1d, _rewrite_conv),
    (nn.Conv2d, _rewrite_conv),
    (nn.Conv3d, _rewrite_conv),
    (
        nn.modules.padding._ConstantPadNd,
        lambda em, node, mod, x: em.call(
            F.pad, (x,), {"pad": tuple(mod.padding), "mode": "constant", "value": float(mod.value)}
        ),
    ),
]


def _module_rewriter(mod: Optional[nn.Module]) -> Optional[Callable[..., Any]]:
    if mod is None:
        return None
    for mod_type, rewrite in _MODULE_REWRITES:
        if isinstance(mod, mod_type):
            return rewrite
    return None


def normalize_module_calls(gm: fx.GraphModule) -> bool:
    """Replace calls to known leaf modules with functional calls on explicit weights."""

    modules = dict(gm.named_modules())
    changed = False
    for node in list(gm.graph.nodes):
        if node.op != "call_module":
            continue
        rewrite = _module_rewriter(modules.get(node.target))
        if rewrite is None:
            continue
        if len(node.args) != 1 or node.kwargs or not isinstance(node.args[0], fx.Node):
            raise LoweringError(
                f"Call to module {node.target!r} ({node.name}) expected a single positional tensor input"
            )
        x = node.args[0]
        with gm.graph.inserting_before(node):
            result = rewrite(_Emitter(gm.graph, node), node, modules[node.target], x)
        if result is _SKIP:
            continue
        _replace(gm.graph, node, x if result is None else result)
        changed = True
    return changed


# ----------------------------------------------------------------------------
# normalize_default_args
# ----------------------------------------------------------------------------

_FUNCTION_SIGNATURES: dict[Any, tuple[tuple[str, Any], ...]] = {
    F.relu: (("inplace", False),),
    F.leaky_relu: (("negative_slope", 0.01), ("inplace", False)),
    F.elu: (("alpha", 1.0), ("inplace", False)),
    F.hardtanh: (("min_val", -1.0), ("max_val", 1.0), ("inplace", False)),
    F.silu: (("inplace", False),),
    F.gelu: (("approximate", "none"),),
    F.softmax: (("dim", None),),
    F.pad: (("pad", _REQUIRED), ("mode", "constant"), ("value", None)),
    torch.clamp: (("min", None), ("max", None)),
    torch.flatten: (("start_dim", 0), ("end_dim", -1)),
}


def normalize_default_args(gm: fx.GraphModule) -> bool:
    """Turn optional positional arguments into explicit keyword arguments."""

    changed = False
    for node in gm.graph.nodes:
        if node.op != "call_function":
            continue
        try:
            signature = _FUNCTION_SIGNATURES.get(node.target)
        except TypeError:
            continue
        if signature is None:
            continue

        args, kwargs = list(node.args), dict(node.kwargs)
        if not args:
            if "input" not in kwargs:
                raise LoweringError(f"{node.name}: call to {node_kind(node)} has no input")
            args.append(kwargs.pop("input"))
        extra = args[1:]
        if len(extra) > len(signature):
            raise LoweringError(
                f"{node.name}: {node_kind(node)} takes at most {len(signature)} optional argument(s), got {len(extra)}"
            )
        for i, (name, default) in enumerate(signature):
            if i < len(extra):
                if name in kwargs:
                    raise LoweringError(f"{node.name}: argument {name!r} given twice")
                kwargs[name] = extra[i]
            elif name not in kwargs:
                if default is _REQUIRED:
                    raise LoweringError(f"{node.name}: missing required argument {name!r}")
                kwargs[name] = default

        new_args = (args[0],)
        if new_args != tuple(node.args) or kwargs != dict(node.kwargs):
            node.args = new_args
            node.kwargs = kwargs
            changed = True
    return changed


# ----------------------------------------------------------------------------
# decompositions
# ----------------------------------------------------------------------------


def _option(node: fx.Node, index: int, name: str, default: Any) -> Any:
    if name in node.kwargs:
        return node.kwargs[name]
    if len(node.args) > index:
        return node.args[index]
    return default


def decompose_silu(gm: fx.GraphModule, *, keep: frozenset[str] = frozenset()) -> bool:
    """silu(x) -> x * sigmoid(x), unless "silu" is in ``keep``."""

    changed = False
    for node in list(gm.graph.nodes):
        if node.op != "call_function" or node.target is not F.silu or "silu" in keep:
            continue
        if _option(node, 1, "inplace", False):
            continue
        x = node.args[0] if node.args else node.kwargs["input"]
        em = _Emitter(gm.graph, node)
        with gm.graph.inserting_before(node):
            out = em.call(operator.mul, (x, em.call(torch.sigmoid, (x,))))
        _replace(gm.graph, node, out)
        changed = True
    return changed


_SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)


def decompose_gelu(
    gm: fx.GraphModule, *, allow_approximation: bool = False, keep: frozenset[str] = frozenset()
) -> bool:
    """Expand gelu into pointwise arithmetic.

    gelu(x) ~= 0.5 * x * (1 + tanh(sqrt(2/pi) * (x + 0.044715 * x^3)))

    This is exact for ``approximate="tanh"``. For the default erf form it is
    only an approximation and fires only with ``allow_approximation``. Nothing
    fires when "gelu" is in ``keep``.
    """

    changed = False
    for node in list(gm.graph.nodes):
        if node.op != "call_function" or node.target is not F.gelu or "gelu" in keep:
            continue
        approximate = _option(node, 1, "approximate", "none")
        if approximate not in ("none", "tanh"):
            raise LoweringError(f"{node.name}: unknown gelu approximation {approximate!r}")
        if approximate == "none" and not allow_approximation:
            continue
        x = node.args[0] if node.args else node.kwargs["input"]
        em = _Emitter(gm.graph, node)
        with gm.graph.inserting_before(node):
            cube = em.call(operator.mul, (em.call(operator.mul, (x, x)), x))
            inner = em.call(operator.add, (x, em.call(operator.mul, (cube, 0.044715))))
            tanh = em.call(torch.tanh, (em.call(operator.mul, (inner, _SQRT_2_OVER_PI)),))
            out = em.call(operator.mul, (em.call(operator.mul, (x, 0.5)), em.call(operator.add, (tanh, 1.0))))
        _replace(gm.graph, node, out)
        changed = True
    return changed


# ----------------------------------------------------------------------------
# fold_constants / eliminate_dead_code
# ----------------------------------------------------------------------------

_NONDETERMINISTIC_KINDS = frozenset({"random", "dropout"})


def _evaluate(node: fx.Node, env: dict[fx.Node, Any]) -> Any:
    args = fx.node.map_arg(node.args, lambda n: env[n])
    kwargs = fx.node.map_arg(node.kwargs, lambda n: env[n])
    if node.op == "call_method":
        self_obj, *rest = args
        return getattr(self_obj, node.target)(*rest, **kwargs)
    return node.target(*args, **kwargs)


def _fresh_attr_name(gm: fx.GraphModule, prefix: str = "_folded_constant") -> str:
    i = 0
    while hasattr(gm, f"{prefix}_{i}"):
        i += 1
    return f"{prefix}_{i}"


def fold_constants(gm: fx.GraphModule) -> bool:
    """Precompute deterministic expressions over constants into buffers.

    Attributes the program writes into are runtime state, not constants.
    """

    mutated = mutated_attributes(gm)
    env: dict[fx.Node, Any] = {}
    folded: list[fx.Node] = []
    for node in gm.graph.nodes:
        if node.op == "get_attr":
            if node.target not in mutated:
                env[node] = fetch_attr(gm, node.target)
            continue
        if node.op not in ("call_function", "call_method"):
            continue
        inputs = node.all_input_nodes
        if not inputs or any(i not in env or isinstance(env[i], nn.Module) for i in inputs):
            continue
        if node_kind(node) in _NONDETERMINISTIC_KINDS or mutates(node):
            continue
        try:
            with torch.no_grad():
                env[node] = _evaluate(node, env)
        except Exception as e:
            logger.debug("not folding %s: %s", node.name, e)
            continue
        folded.append(node)

    folded_set = set(folded)
    changed = False
    for node in folded:
        value = env[node]
        if not isinstance(value, torch.Tensor):
            continue
        if all(user in folded_set for user in node.users):
            continue
        name = _fresh_attr_name(gm)
        gm.register_buffer(name, value.detach().clone())
        with gm.graph.inserting_before(node):
            attr = _Emitter(gm.graph, node).get_attr(name)
        _replace(gm.graph, node, attr)
        logger.debug("folded %s into constant %s", node.name, name)
        changed = True
    return changed


def eliminate_dead_code(gm: fx.GraphModule) -> bool:
    """Remove nodes whose results are never used and which have no side effects."""

    changed = False
    for node in reversed(list(gm.graph.nodes)):
        if node.op in ("placeholder", "output") or node.users:
            continue
        if node.op in COMPUTE_OPS and (node.is_impure() or mutates(node)):
            continue
        gm.graph.erase_node(node)
        changed = True
    gm.delete_all_unused_submodules()
    return changed


# ----------------------------------------------------------------------------
# pipeline
# ----------------------------------------------------------------------------


def default_pipeline(config: Optional[CompileConfig] = None) -> LoweringPipeline:
    """The standard passes. Op kinds excluded by ``config`` are never decomposed."""

    config = config or CompileConfig()
    keep = frozenset(config.torch_executed_ops)
    return LoweringPipeline(
        [
            LoweringPass("normalize_module_calls", normalize_module_calls),
            LoweringPass("normalize_default_args", normalize_default_args),
            LoweringPass("decompose_silu", functools.partial(decompose_silu, keep=keep)),
            LoweringPass(
                "decompose_gelu",
                functools.partial(decompose_gelu, allow_approximation=config.approximate_gelu, keep=keep),
            ),
            LoweringPass("fold_constants", fold_constants),
            LoweringPass("eliminate_dead_code", eliminate_dead_code),
        ]
    )


def lower_graph(gm: fx.GraphModule, config: Optional[CompileConfig] = None) -> fx.GraphModule:
    changed = default_pipeline(config).run(gm)
    logger.debug("lowering changed: %s", ", ".join(changed) or "nothing")
    return gm
