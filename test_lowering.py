import operator

import pytest
import torch
import torch.fx as fx
import torch.nn.functional as F

from conftest import ConvNet, Counter
from fxengine import CompileConfig, LoweringError
from fxengine.ir import MODULE_STACK_KEY, mutated_attributes, node_kind, trace_program
from fxengine.lowering import (
    LoweringPass,
    LoweringPipeline,
    decompose_gelu,
    decompose_silu,
    default_pipeline,
    eliminate_dead_code,
    fold_constants,
    lower_graph,
    normalize_default_args,
    normalize_module_calls,
)


def _kinds(gm: fx.GraphModule) -> list[str]:
    modules = dict(gm.named_modules())
    return [node_kind(n, modules) for n in gm.graph.nodes if n.op in ("call_function", "call_method", "call_module")]


class SiluGelu(torch.nn.Module):
    def __init__(self, approximate: str = "none"):
        super().__init__()
        self.act = torch.nn.SiLU()
        self.gelu = torch.nn.GELU(approximate=approximate)

    def forward(self, x):
        return self.gelu(self.act(x))


class WithConstants(torch.nn.Module):
    def __init__(self):
        super().__init__()
        self.register_buffer("scale", torch.full((4,), 2.0))
        self.register_buffer("shift", torch.ones(4))

    def forward(self, x):
        return x * (self.scale * 3.0 + self.shift)


class WithDeadCode(torch.nn.Module):
    def forward(self, x):
        unused = torch.exp(x)  # noqa: F841
        return torch.relu(x)


def test_normalize_module_calls_replaces_known_modules():
    gm = trace_program(ConvNet().eval())
    assert normalize_module_calls(gm)
    gm.recompile()
    kinds = _kinds(gm)
    assert "conv2d" in kinds
    assert "relu" in kinds
    assert "linear" in kinds
    assert not any(n.op == "call_module" for n in gm.graph.nodes)


def test_normalized_graph_computes_the_same():
    model = ConvNet().eval()
    gm = trace_program(model)
    lower_graph(gm)
    x = torch.randn(2, 3, 8, 8)
    torch.testing.assert_close(gm(x), model(x))


def test_rewritten_nodes_keep_module_scope():
    gm = trace_program(ConvNet().eval())
    normalize_module_calls(gm)
    (conv,) = [n for n in gm.graph.nodes if n.target is F.conv2d]
    assert ("conv", "torch.nn.modules.conv.Conv2d") in conv.meta[MODULE_STACK_KEY]


def test_dropout_is_removed_only_in_eval():
    model = torch.nn.Sequential(torch.nn.Dropout(0.5), torch.nn.ReLU())
    gm = trace_program(model.eval())
    normalize_module_calls(gm)
    assert "torch.nn.modules.dropout.Dropout" not in _kinds(gm)

    gm = trace_program(model.train())
    normalize_module_calls(gm)
    assert "torch.nn.modules.dropout.Dropout" in _kinds(gm)


def test_normalize_default_args_makes_options_explicit():
    gm = fx.symbolic_trace(lambda x: F.leaky_relu(x, 0.2))
    assert normalize_default_args(gm)
    (node,) = [n for n in gm.graph.nodes if n.op == "call_function"]
    assert len(node.args) == 1
    assert node.kwargs == {"negative_slope": 0.2, "inplace": False}
    assert not normalize_default_args(gm)


def test_normalize_default_args_rejects_argument_given_twice():
    graph = fx.Graph()
    x = graph.placeholder("x")
    graph.output(graph.call_function(F.elu, (x, 1.0), {"alpha": 2.0}))
    gm = fx.GraphModule(torch.nn.Module(), graph)
    with pytest.raises(LoweringError, match="given twice"):
        normalize_default_args(gm)


def test_decompose_silu():
    gm = trace_program(SiluGelu())
    normalize_module_calls(gm)
    assert decompose_silu(gm)
    gm.recompile()
    targets = [n.target for n in gm.graph.nodes if n.op == "call_function"]
    assert F.silu not in targets
    assert torch.sigmoid in targets
    assert operator.mul in targets
    x = torch.randn(8)
    torch.testing.assert_close(gm(x), F.gelu(F.silu(x)))


def test_inplace_silu_is_left_alone():
    gm = fx.symbolic_trace(lambda x: F.silu(x, inplace=True))
    assert not decompose_silu(gm)


def test_exact_gelu_needs_approximation_opt_in():
    gm = trace_program(SiluGelu())
    normalize_module_calls(gm)
    assert not decompose_gelu(gm)
    assert decompose_gelu(gm, allow_approximation=True)
    gm.recompile()
    assert F.gelu not in [n.target for n in gm.graph.nodes]


def test_tanh_gelu_decomposition_is_exact():
    model = SiluGelu(approximate="tanh")
    gm = trace_program(model)
    normalize_module_calls(gm)
    assert decompose_gelu(gm)
    gm.recompile()
    x = torch.randn(64) * 3
    torch.testing.assert_close(gm(x), model(x), rtol=1e-4, atol=1e-5)


def test_fold_constants_replaces_constant_subexpressions():
    model = WithConstants()
    gm = trace_program(model)
    assert fold_constants(gm)
    eliminate_dead_code(gm)
    gm.recompile()
    call_targets = [n.target for n in gm.graph.nodes if n.op == "call_function"]
    assert call_targets == [operator.mul]
    assert any(name.startswith("_folded_constant") for name, _ in gm.named_buffers())
    x = torch.randn(4)
    torch.testing.assert_close(gm(x), model(x))


def test_fold_constants_skips_random_ops():
    class Noisy(torch.nn.Module):
        def __init__(self):
            super().__init__()
            self.register_buffer("base", torch.zeros(4))

        def forward(self, x):
            return x + torch.rand_like(self.base)

    gm = trace_program(Noisy())
    assert not fold_constants(gm)


def test_eliminate_dead_code():
    gm = trace_program(WithDeadCode())
    assert eliminate_dead_code(gm)
    gm.recompile()
    assert _kinds(gm) == ["relu"]


def test_eliminate_dead_code_keeps_inplace_calls():
    class Mutating(torch.nn.Module):
        def forward(self, x):
            y = x * 2
            y.add_(1)
            return y

    gm = trace_program(Mutating())
    eliminate_dead_code(gm)
    assert "add_" in _kinds(gm)


def test_default_pipeline_is_idempotent():
    gm = trace_program(SiluGelu(approximate="tanh"))
    first = default_pipeline().run(gm)
    assert "normalize_module_calls" in first
    assert "decompose_silu" in first
    assert "decompose_gelu" in first
    assert default_pipeline().run(gm) == []


def test_pipeline_with_approximate_gelu():
    gm = trace_program(SiluGelu())
    default_pipeline(CompileConfig(approximate_gelu=True)).run(gm)
    assert "gelu" not in _kinds(gm)
    gm = trace_program(SiluGelu())
    default_pipeline().run(gm)
    assert "gelu" in _kinds(gm)


def test_pipeline_rejects_malformed_graph():
    def breaks_graph(gm):
        (out,) = [n for n in gm.graph.nodes if n.op == "output"]
        x = next(iter(gm.graph.nodes))
        # Move the output before a node it depends on.
        x.prepend(out)
        return True

    gm = trace_program(WithDeadCode())
    pipeline = LoweringPipeline([LoweringPass("breaks_graph", breaks_graph)])
    with pytest.raises(LoweringError, match="breaks_graph"):
        pipeline.run(gm)


def test_excluded_kinds_are_not_decomposed():
    gm = trace_program(SiluGelu(approximate="tanh"))
    default_pipeline(CompileConfig(torch_executed_ops=("aten::silu",))).run(gm)
    kinds = _kinds(gm)
    assert "silu" in kinds
    assert "gelu" not in kinds

    gm = trace_program(SiluGelu(approximate="tanh"))
    default_pipeline(CompileConfig(torch_executed_ops=("gelu",))).run(gm)
    kinds = _kinds(gm)
    assert "gelu" in kinds
    assert "silu" not in kinds and "sigmoid" in kinds


def test_fold_constants_leaves_mutated_buffers_alone():
    model = Counter()
    gm = trace_program(model)
    assert mutated_attributes(gm) == {"step"}
    assert not fold_constants(gm)
    assert not [name for name, _ in gm.named_buffers() if name.startswith("_folded_constant")]

    gm.recompile()
    x = torch.ones(3)
    torch.testing.assert_close(gm(x), x * 2)
    torch.testing.assert_close(gm(x), x * 4)


def test_writes_through_views_mark_the_attribute():
    class ViewWriter(torch.nn.Module):
        def __init__(self):
            super().__init__()
            self.register_buffer("state", torch.zeros(2, 3))
            self.proj = torch.nn.Linear(3, 3)

        def forward(self, x):
            self.state[0].copy_(x)
            return F.relu(self.proj(x), inplace=True) + self.state.sum()

    gm = trace_program(ViewWriter())
    normalize_module_calls(gm)
    # The in-place relu writes into the linear output, not into its weights.
    assert mutated_attributes(gm) == {"state"}


def test_pipeline_names_the_pass_that_raised():
    def explodes(gm):
        raise KeyError("input")

    gm = trace_program(WithDeadCode())
    pipeline = LoweringPipeline([LoweringPass("explodes", explodes)])
    with pytest.raises(LoweringError, match="'explodes' failed") as info:
        pipeline.run(gm)
    assert isinstance(info.value.__cause__, KeyError)
