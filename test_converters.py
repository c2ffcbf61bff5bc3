import pytest
import torch
import torch.fx as fx
import torch.nn.functional as F

from conftest import SingleActivation
from fxengine import CompileConfig, ConverterContractError, EngineBuildError, InputSpec, compile_program
from fxengine.compiler import compile_segment
from fxengine.converters import DEFAULT_REGISTRY, ConversionContext, ConverterRegistry
from fxengine.ir import node_kind, propagate_shape_specs, trace_program
from fxengine.lowering import lower_graph
from fxengine.network import TorchEngineBuilder
from fxengine.partition import partition_graph


def _compile(model, specs, config=None, **kwargs):
    program = compile_program(model, specs, config, check_fidelity=False, **kwargs)
    assert program.plan.is_fully_converted, program.plan.summary()
    return program


def _assert_matches(model, specs, inputs, config=None, tol=1e-5):
    program = _compile(model, specs, config)
    torch.testing.assert_close(program(*inputs), model(*inputs), rtol=tol, atol=tol)
    return program


@pytest.mark.parametrize(
    "module",
    [
        torch.nn.ReLU(),
        torch.nn.Sigmoid(),
        torch.nn.Tanh(),
        torch.nn.Hardtanh(),
        torch.nn.Hardtanh(-3.5, 2.5),
        torch.nn.LeakyReLU(0.2),
        torch.nn.ELU(alpha=1.5),
        torch.nn.GELU(),
        torch.nn.GELU(approximate="tanh"),
    ],
    ids=lambda m: repr(m),
)
def test_activation_converts(module):
    x = torch.randn(1, 2, 2) * 5
    _assert_matches(module.eval(), [(1, 2, 2)], [x])


@pytest.mark.parametrize("channels", [1, 5])
def test_prelu_converts(channels):
    model = torch.nn.PReLU(num_parameters=channels).eval()
    with torch.no_grad():
        model.weight.copy_(torch.linspace(0.1, 0.5, channels))
    x = torch.randn(1, 5, 3, 3)
    _assert_matches(model, [(1, 5, 3, 3)], [x])


@pytest.mark.parametrize("fn", [torch.relu, torch.sigmoid, torch.tanh, lambda x: torch.clamp(x, -1.5, 0.5)])
def test_functional_activation_converts(fn):
    x = torch.randn(3, 4)
    _assert_matches(SingleActivation(fn), [(3, 4)], [x])


@pytest.mark.parametrize(
    "padding, shape",
    [
        ((2, 3), (1, 3, 4)),
        ((2, 0), (1, 3, 4)),
        ((2, 3, 2, 3), (1, 3, 4, 4)),
        ((0, 3, 0, 3), (1, 3, 4, 4)),
        ((2, 3, 2, 3, 1, 4), (1, 3, 4, 4, 4)),
    ],
)
def test_constant_pad_converts(padding, shape):
    model = SingleActivation(lambda x: F.pad(x, padding, value=2.0))
    x = torch.randint(1, 10, shape).float()
    _assert_matches(model, [shape], [x])


def test_constant_pad_module_converts_with_dynamic_shapes():
    model = torch.nn.ConstantPad2d((2, 3, 2, 3), 2.0).eval()
    spec = InputSpec.ranged((1, 3, 2, 2), (1, 3, 4, 4), (2, 3, 8, 8))
    program = _compile(model, [spec])
    for shape in [(1, 3, 2, 2), (1, 3, 4, 4), (2, 3, 8, 8), (2, 3, 5, 7)]:
        x = torch.randint(1, 10, shape).float()
        torch.testing.assert_close(program(x), model(x))


def test_reflect_pad_runs_in_torch():
    model = SingleActivation(lambda x: F.pad(x, (1, 1), mode="reflect"))
    program = compile_program(model, [(1, 3, 4)], check_fidelity=False)
    assert not program.plan.segments
    x = torch.randn(1, 3, 4)
    torch.testing.assert_close(program(x), model(x))


class MixedOps(torch.nn.Module):
    def __init__(self):
        super().__init__()
        self.register_buffer("bias", torch.linspace(-1.0, 1.0, 8))

    def forward(self, x, y):
        a = torch.matmul(x, y.transpose(1, 2))
        a = torch.softmax(a / 4.0, dim=-1)
        b = (x - 0.5 * y).exp().sum(dim=-1, keepdim=True)
        c = torch.cat([a, b], dim=-1).permute(0, 2, 1).contiguous()
        d = torch.maximum(c, -c) + self.bias.mean()
        e = torch.sub(x, y, alpha=2.0).abs().sqrt()
        return d.reshape(2, -1), e.unsqueeze(1).squeeze(1).mean(dim=(1, 2)) ** 2


def test_mixed_ops_convert_into_one_engine():
    model = MixedOps().eval()
    x, y = torch.randn(2, 4, 8), torch.randn(2, 4, 8)
    program = _compile(model, [(2, 4, 8), (2, 4, 8)])
    expected = model(x, y)
    actual = program(x, y)
    assert len(program.engines) == 1
    for a, e in zip(actual, expected):
        torch.testing.assert_close(a, e, rtol=1e-5, atol=1e-6)


class ConvStack(torch.nn.Module):
    def __init__(self):
        super().__init__()
        self.c1 = torch.nn.Conv1d(2, 4, 3, padding=1)
        self.c3 = torch.nn.Conv3d(2, 2, 3, stride=2, bias=False)

    def forward(self, x, v):
        return self.c1(x), self.c3(v)


def test_conv1d_and_conv3d_convert():
    model = ConvStack().eval()
    x, v = torch.randn(1, 2, 10), torch.randn(1, 2, 7, 7, 7)
    program = _compile(model, [(1, 2, 10), (1, 2, 7, 7, 7)])
    for a, e in zip(program(x, v), model(x, v)):
        torch.testing.assert_close(a, e)


def test_integer_inputs_need_truncation():
    model = SingleActivation(lambda x: x + 1)
    with pytest.raises(EngineBuildError, match="truncate_long_and_double"):
        compile_program(model, ["(2,3)@i64"], check_fidelity=False)

    program = compile_program(
        model, ["(2,3)@i64"], CompileConfig(truncate_long_and_double=True), check_fidelity=False
    )
    x = torch.arange(6).reshape(2, 3)
    out = program(x)
    assert out.dtype == torch.int64
    assert torch.equal(out, x + 1)
    (engine,) = program.engines.values()
    assert engine.input_bindings[0].dtype == torch.int32
    assert engine.input_bindings[0].accepts == torch.int64


def test_inplace_activation_on_shared_value_runs_in_torch():
    def fn(x):
        y = x * 2
        z = F.relu(y, inplace=True)
        return z + y

    program = compile_program(SingleActivation(fn), [(4,)], check_fidelity=False)
    decisions = {d.kind: d for d in program.plan.decisions.values()}
    assert not decisions["relu"].eligible
    assert decisions["relu"].reason == "unsupported configuration"


def _lowered(model, specs):
    gm = trace_program(model)
    lower_graph(gm)
    propagate_shape_specs(gm, [InputSpec.static(s) for s in specs])
    return gm


def test_unsupported_reasons():
    class Model(torch.nn.Module):
        def forward(self, x):
            n = x.size(0)
            y = torch.cumsum(x, dim=0)
            return torch.softmax(y, dim=-1) * n

    gm = _lowered(Model(), [(3, 4)])
    reasons = {}
    for node in gm.graph.nodes:
        if node.op == "call_function" or node.op == "call_method":
            kind = node_kind(node)
            reasons[kind] = DEFAULT_REGISTRY.unsupported_reason(node, kind)
    assert reasons["size"] == "pure fallback op"
    assert reasons["softmax"] is None
    assert reasons["mul"].startswith("non-tensor operand")
    assert any(r == "no converter" for k, r in reasons.items() if "cumsum" in k)


def test_registry_rejects_double_registration():
    registry = ConverterRegistry()

    @registry.register("relu")
    def first(ctx, node):
        raise AssertionError

    with pytest.raises(ConverterContractError, match="twice"):
        registry.register("relu")(first)
    with pytest.raises(ConverterContractError):
        registry.register_fallback("relu")
    registry.register_fallback("size")
    assert registry.is_fallback("size")
    assert not registry.is_fallback("relu")


def test_custom_converter_extends_a_copy_of_the_registry():
    registry = DEFAULT_REGISTRY.copy()

    @registry.register("cumsum", supports=lambda node: node.kwargs.get("dim") == -1)
    def convert_cumsum(ctx: ConversionContext, node: fx.Node):
        # cumsum over the last axis as a matmul with an upper-triangular ones matrix
        x = ctx.get_tensor(node.args[0])
        n = x.shape[-1]
        tri = ctx.constant(torch.triu(torch.ones(n, n)))
        return ctx.add_layer("matrix_multiply", [x, tri])

    class Model(torch.nn.Module):
        def forward(self, x):
            return torch.relu(x.cumsum(dim=-1))

    model = Model()
    program = compile_program(model, [(2, 5)], registry=registry, check_fidelity=False)
    assert program.plan.is_fully_converted
    x = torch.randn(2, 5)
    torch.testing.assert_close(program(x), model(x))
    assert "cumsum" not in DEFAULT_REGISTRY.kinds


def test_converter_with_wrong_output_shape_is_rejected():
    registry = DEFAULT_REGISTRY.copy()

    @registry.register("erfinv")
    def bad(ctx, node):
        return ctx.add_layer("shuffle", [ctx.get_tensor(node.args[0])], op="flatten", start_dim=0, end_dim=-1)

    model = SingleActivation(lambda x: x.erfinv())
    gm = _lowered(model, [(2, 3)])
    plan = partition_graph(gm, registry)
    with pytest.raises(ConverterContractError, match="expected"):
        compile_segment(gm, plan.segments[0], CompileConfig(), registry, TorchEngineBuilder())
