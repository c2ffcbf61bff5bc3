"""torch.fx helpers: tracing, op-kind naming and shape-range propagation."""

from __future__ import annotations

import copy
import logging
import operator
from typing import Any, Callable, Optional, Sequence

import torch
import torch.fx as fx
import torch.nn.functional as F
from torch.fx.passes.shape_prop import ShapeProp, TensorMetadata

from .errors import ConfigurationError, LoweringError
from .types import InputSpec, ShapeSpec

logger = logging.getLogger(__name__)

COMPUTE_OPS = ("call_function", "call_method", "call_module")

# (module path, qualified module class name) from the root down to the node.
MODULE_STACK_KEY = "fxengine_module_stack"
SHAPE_SPEC_KEY = "fxengine_shape_spec"


def qualified_name(obj: Any) -> str:
    module = getattr(obj, "__module__", None) or ""
    name = getattr(obj, "__qualname__", None) or getattr(obj, "__name__", None) or repr(obj)
    return f"{module}.{name}" if module else name


def qualified_type_name(mod: torch.nn.Module) -> str:
    return qualified_name(type(mod))


_FUNCTION_KINDS: dict[Any, str] = {
    # activations
    torch.relu: "relu",
    F.relu: "relu",
    torch.sigmoid: "sigmoid",
    F.sigmoid: "sigmoid",
    torch.tanh: "tanh",
    F.tanh: "tanh",
    F.leaky_relu: "leaky_relu",
    F.elu: "elu",
    F.hardtanh: "hardtanh",
    F.gelu: "gelu",
    F.silu: "silu",
    F.prelu: "prelu",
    torch.prelu: "prelu",
    torch.clamp: "clamp",
    torch.clip: "clamp",
    # elementwise
    operator.add: "add",
    torch.add: "add",
    operator.sub: "sub",
    torch.sub: "sub",
    operator.mul: "mul",
    torch.mul: "mul",
    operator.truediv: "div",
    torch.div: "div",
    operator.pow: "pow",
    torch.pow: "pow",
    torch.maximum: "maximum",
    torch.minimum: "minimum",
    operator.neg: "neg",
    torch.neg: "neg",
    torch.exp: "exp",
    torch.log: "log",
    torch.sqrt: "sqrt",
    torch.rsqrt: "rsqrt",
    torch.abs: "abs",
    operator.abs: "abs",
    torch.erf: "erf",
    # linear algebra
    operator.matmul: "matmul",
    torch.matmul: "matmul",
    torch.mm: "matmul",
    torch.bmm: "matmul",
    F.linear: "linear",
    F.conv1d: "conv1d",
    F.conv2d: "conv2d",
    F.conv3d: "conv3d",
    # shape
    torch.reshape: "reshape",
    torch.flatten: "flatten",
    torch.permute: "permute",
    torch.transpose: "transpose",
    torch.unsqueeze: "unsqueeze",
    torch.squeeze: "squeeze",
    torch.cat: "cat",
    F.pad: "pad",
    # reductions
    torch.softmax: "softmax",
    F.softmax: "softmax",
    torch.sum: "sum",
    torch.mean: "mean",
    # always interpreted
    operator.getitem: "getitem",
    getattr: "getattr",
    torch._assert: "assert",
    torch.rand: "random",
    torch.randn: "random",
    torch.randint: "random",
    torch.rand_like: "random",
    torch.randn_like: "random",
    torch.bernoulli: "random",
    torch.multinomial: "random",
    F.dropout: "dropout",
}

_METHOD_KINDS: dict[str, str] = {
    "view": "reshape",
    "clip": "clamp",
    "__add__": "add",
    "__mul__": "mul",
}


def node_kind(node: fx.Node, modules: Optional[dict[str, torch.nn.Module]] = None) -> str:
    """Name the operation a node performs.

    Known callables map to short kinds (``"relu"``, ``"conv2d"``); aten overloads
    from make_fx graphs map to their op name; anything else to its qualified
    name. Leaf modules map to their qualified class name.
    """

    if node.op == "call_function":
        target = node.target
        try:
            kind = _FUNCTION_KINDS.get(target)
        except TypeError:
            kind = None
        if kind is not None:
            return kind
        if isinstance(target, torch._ops.OpOverload):
            return target._schema.name.split("::", 1)[-1]
        return qualified_name(target)
    if node.op == "call_method":
        name = str(node.target)
        return _METHOD_KINDS.get(name, name)
    if node.op == "call_module":
        if modules is not None and node.target in modules:
            return qualified_type_name(modules[node.target])
        return str(node.target)
    return node.op


def tensor_meta(node: Any) -> Optional[TensorMetadata]:
    """The propagated metadata of a node producing exactly one tensor."""

    if not isinstance(node, fx.Node):
        return None
    meta = node.meta.get("tensor_meta")
    return meta if isinstance(meta, TensorMetadata) else None


def fetch_attr(root: torch.nn.Module, target: str) -> Any:
    obj: Any = root
    for i, atom in enumerate(target.split(".")):
        if not hasattr(obj, atom):
            raise LoweringError(f"Node referenced nonexistent target {'.'.join(target.split('.')[:i + 1])}")
        obj = getattr(obj, atom)
    return obj


_INPLACE_OPERATORS = frozenset(
    {
        operator.iadd,
        operator.isub,
        operator.imul,
        operator.itruediv,
        operator.ifloordiv,
        operator.ipow,
        operator.setitem,
    }
)


def mutates(node: fx.Node) -> bool:
    """True if the node writes into one of its operands."""

    if node.op == "call_method":
        name = str(node.target)
        if name.endswith("_") and not name.endswith("__"):
            return True
    if node.op == "call_function":
        if node.target in _INPLACE_OPERATORS:
            return True
        name = getattr(node.target, "__name__", "")
        if name.endswith("_") and not name.endswith("__"):
            return True
    return bool(node.kwargs.get("inplace")) or "out" in node.kwargs


# Ops whose result may share storage with their first operand.
_ALIASING_KINDS = frozenset(
    {
        "reshape",
        "flatten",
        "permute",
        "transpose",
        "t",
        "unsqueeze",
        "squeeze",
        "expand",
        "expand_as",
        "view_as",
        "narrow",
        "select",
        "getitem",
        "__getitem__",
        "detach",
        "contiguous",
        "unflatten",
        "as_strided",
        "chunk",
        "split",
        "unbind",
    }
)


def _aliased_operand(node: fx.Node) -> Any:
    return node.args[0] if node.args else node.kwargs.get("input")


def mutated_attributes(gm: fx.GraphModule) -> frozenset[str]:
    """Targets of ``get_attr`` values that some node of ``gm`` writes into.

    Writes through views count: the walk from a written value goes back through
    aliasing ops, and through in-place ops, which return their operand.
    """

    targets: set[str] = set()
    seen: set[fx.Node] = set()

    def _walk(value: Any) -> None:
        if not isinstance(value, fx.Node) or value in seen:
            return
        seen.add(value)
        if value.op == "get_attr":
            targets.add(str(value.target))
        elif value.op in ("call_function", "call_method") and (
            node_kind(value) in _ALIASING_KINDS or mutates(value)
        ):
            _walk(_aliased_operand(value))

    for node in gm.graph.nodes:
        if node.op in COMPUTE_OPS and mutates(node):
            _walk(node.kwargs.get("out"))
            _walk(_aliased_operand(node))
    return frozenset(targets)


def module_stack(node: fx.Node) -> list[tuple[str, str]]:
    """Enclosing modules of a node as ``(path, qualified class name)`` pairs."""

    stack = node.meta.get(MODULE_STACK_KEY)
    if stack is not None:
        return list(stack)
    # torch's own tracers record {key: (path, type)}.
    torch_stack = node.meta.get("nn_module_stack") or {}
    out = []
    for value in torch_stack.values():
        path, mod_type = value
        out.append((str(path), mod_type if isinstance(mod_type, str) else qualified_name(mod_type)))
    return out


class _ScopeTracer(fx.Tracer):
    """Tracer that keeps selected modules as leaves and records module scopes."""

    def __init__(self, is_leaf: Callable[[torch.nn.Module, str], bool]) -> None:
        super().__init__()
        self._is_leaf = is_leaf
        self._scope: list[tuple[str, str]] = []

    def is_leaf_module(self, m: torch.nn.Module, module_qualified_name: str) -> bool:  # type: ignore[override]
        if self._is_leaf(m, module_qualified_name):
            return True
        return super().is_leaf_module(m, module_qualified_name)

    def call_module(self, m, forward, args, kwargs):  # type: ignore[override]
        path = self.path_of_module(m)
        self._scope.append((path, qualified_type_name(m)))
        try:
            return super().call_module(m, forward, args, kwargs)
        finally:
            self._scope.pop()

    def create_node(self, kind, target, args, kwargs, name=None, type_expr=None):  # type: ignore[override]
        node = super().create_node(kind, target, args, kwargs, name, type_expr)
        node.meta[MODULE_STACK_KEY] = tuple(self._scope)
        return node


def trace_program(
    model: torch.nn.Module,
    *,
    example_inputs: Sequence[torch.Tensor] = (),
    is_leaf: Optional[Callable[[torch.nn.Module, str], bool]] = None,
) -> fx.GraphModule:
    """Trace a module to FX, or copy an existing GraphModule.

    Preference order:
    1) symbolic tracing (keeps call_module boundaries, so module exclusions apply)
    2) proxy-tensor make_fx on the example inputs (aten-level graph)

    The returned GraphModule owns its graph; the caller's module is not modified.
    """

    if isinstance(model, fx.GraphModule):
        return fx.GraphModule(model, copy.deepcopy(model.graph), class_name=type(model).__name__)

    leaf = is_leaf or (lambda m, name: False)
    try:
        tracer = _ScopeTracer(leaf)
        graph = tracer.trace(model)
        return fx.GraphModule(tracer.root, graph, class_name=type(model).__name__)
    except Exception as symbolic_error:
        logger.warning("symbolic tracing failed (%s); falling back to make_fx", symbolic_error)
        try:
            from torch.fx.experimental.proxy_tensor import make_fx

            gm = make_fx(model)(*example_inputs)
            assert isinstance(gm, fx.GraphModule)
            return gm
        except Exception as e:
            raise LoweringError("Failed to trace model to FX") from e


def module_device(module: torch.nn.Module) -> torch.device:
    for t in module.parameters():
        return t.device
    for t in module.buffers():
        return t.device
    return torch.device("cpu")


def propagate_shape_specs(gm: fx.GraphModule, input_specs: Sequence[InputSpec]) -> None:
    """Annotate every node with ``tensor_meta`` and a min/opt/max ``ShapeSpec``.

    Shape propagation runs at the min and max shapes of the inputs, then at the
    opt shape last so that ``tensor_meta`` describes the opt profile.
    """

    placeholders = [n for n in gm.graph.nodes if n.op == "placeholder"]
    if len(placeholders) != len(input_specs):
        raise LoweringError(
            f"Program takes {len(placeholders)} input(s) but {len(input_specs)} input spec(s) were given"
        )

    device = module_device(gm)
    dynamic = any(spec.shape.is_dynamic for spec in input_specs)
    runs = ("min", "max", "opt") if dynamic else ("opt",)
    shapes: dict[str, dict[fx.Node, tuple[int, ...]]] = {}
    for which in runs:
        examples = [spec.example(which, device=device) for spec in input_specs]
        try:
            with torch.no_grad():
                ShapeProp(gm).propagate(*examples)
        except Exception as e:
            raise LoweringError(f"Shape propagation failed at the {which} input shapes: {e}") from e
        observed: dict[fx.Node, tuple[int, ...]] = {}
        for node in gm.graph.nodes:
            meta = tensor_meta(node)
            if meta is not None:
                observed[node] = tuple(meta.shape)
        shapes[which] = observed

    for node in gm.graph.nodes:
        opt = shapes["opt"].get(node)
        if opt is None:
            node.meta.pop(SHAPE_SPEC_KEY, None)
            continue
        lo = shapes.get("min", shapes["opt"]).get(node, opt)
        hi = shapes.get("max", shapes["opt"]).get(node, opt)
        if not len(lo) == len(opt) == len(hi):
            raise LoweringError(f"Rank of {node.name} depends on the input shape: {lo}, {opt}, {hi}")
        # Some ops shrink as inputs grow; order each dimension explicitly.
        try:
            node.meta[SHAPE_SPEC_KEY] = ShapeSpec(
                tuple(map(min, lo, opt, hi)), opt, tuple(map(max, lo, opt, hi))
            )
        except ConfigurationError:
            # Empty tensors have no engine profile.
            logger.debug("no shape range for %s: %s, %s, %s", node.name, lo, opt, hi)
            node.meta.pop(SHAPE_SPEC_KEY, None)


def shape_spec(node: fx.Node) -> Optional[ShapeSpec]:
    return node.meta.get(SHAPE_SPEC_KEY)
