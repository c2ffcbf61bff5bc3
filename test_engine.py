import pytest
import torch
import torch.fx as fx

from fxengine import CompileConfig, EngineBuildError, EngineRuntimeError, ShapeSpec
from fxengine.converters import ConversionContext
from fxengine.engine_module import EngineModule
from fxengine.network import CompiledEngine, Network, TorchEngineBuilder, _tf32, compute_dtype_for
from fxengine.types import DType


def _mlp_network(builder: TorchEngineBuilder, shape: ShapeSpec = ShapeSpec.static((2, 8))) -> Network:
    """x @ w.T + b -> relu -> softmax"""
    net = builder.create_network("mlp")
    x = net.add_input("x", torch.float32, shape)
    w = net.add_constant(torch.randn(4, 8))
    b = net.add_constant(torch.randn(4))
    (h,) = net.add_layer("matrix_multiply", [x, w], transpose_b=True)
    (h,) = net.add_layer("elementwise", [h, b], op="sum")
    (h,) = net.add_layer("activation", [h], type="relu")
    (y,) = net.add_layer("softmax", [h], dim=-1)
    net.mark_output(y, name="y")
    return net


def _reference(net: Network, x: torch.Tensor) -> torch.Tensor:
    w, b = (layer.attrs["value"] for layer in net.layers if layer.kind == "constant")
    return torch.softmax(torch.relu(x @ w.T + b), dim=-1)


def test_network_infers_output_metadata():
    net = _mlp_network(TorchEngineBuilder())
    softmax = net.layers[-1]
    out = net.tensor(softmax.outputs[0])
    assert out.shape == (2, 4)
    assert out.dtype == torch.float32
    assert [layer.kind for layer in net.layers] == [
        "constant",
        "constant",
        "matrix_multiply",
        "elementwise",
        "activation",
        "softmax",
    ]


def test_network_rejects_bad_layers():
    net = Network("bad")
    x = net.add_input("x", torch.float32, ShapeSpec.static((2, 3)))
    with pytest.raises(EngineBuildError, match="Unknown layer kind"):
        net.add_layer("lstm", [x])
    with pytest.raises(EngineBuildError, match="rejected its inputs"):
        net.add_layer("matrix_multiply", [x, x])
    with pytest.raises(EngineBuildError, match="another network"):
        other = Network("other").add_input("y", torch.float32, ShapeSpec.static((2, 3)))
        net.add_layer("activation", [other], type="relu")
    with pytest.raises(EngineBuildError, match="Duplicate"):
        net.add_input("x", torch.float32, ShapeSpec.static((2, 3)))


def test_build_and_execute(config):
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    engine = builder.build(net, config)
    x = torch.randn(2, 8)
    (y,) = engine.execute([x])
    torch.testing.assert_close(y, _reference(net, x))
    assert engine.info.latency_ms >= 0.0
    assert engine.info.timing_iterations == (2, 1)
    assert engine.output_bindings[0].name == "y"


def test_build_without_outputs_fails(config):
    builder = TorchEngineBuilder()
    net = builder.create_network("empty")
    net.add_input("x", torch.float32, ShapeSpec.static((2,)))
    with pytest.raises(EngineBuildError, match="no outputs"):
        builder.build(net, config)


def test_serialize_roundtrip(config):
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    engine = builder.build(net, config)
    restored = CompiledEngine.deserialize(engine.serialize())
    x = torch.randn(2, 8)
    torch.testing.assert_close(restored(x)[0], engine(x)[0])
    assert restored.name == engine.name
    assert restored.input_bindings == engine.input_bindings
    assert restored.info == engine.info


def test_deserialize_rejects_garbage():
    with pytest.raises(EngineRuntimeError, match="Not a serialized engine"):
        CompiledEngine.deserialize(b"not an engine")


def test_execute_checks_bindings(config):
    builder = TorchEngineBuilder()
    engine = builder.build(_mlp_network(builder, ShapeSpec.ranged((1, 8), (2, 8), (4, 8))), config)
    engine.execute([torch.randn(1, 8)])
    engine.execute([torch.randn(4, 8)])
    with pytest.raises(EngineRuntimeError, match="outside the engine profile"):
        engine.execute([torch.randn(5, 8)])
    with pytest.raises(EngineRuntimeError, match="dtype"):
        engine.execute([torch.randn(2, 8, dtype=torch.float64)])
    with pytest.raises(EngineRuntimeError, match="expects 1 input"):
        engine.execute([])


def test_half_precision_engine():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    engine = builder.build(net, CompileConfig(enabled_precisions=frozenset({DType.HALF})))
    assert engine.compute_dtype == torch.float16
    (y,) = engine.execute([torch.randn(2, 8)])
    assert y.dtype == torch.float32

    strict = builder.build(net, CompileConfig(enabled_precisions=frozenset({DType.HALF}), strict_types=True))
    (y,) = strict.execute([torch.randn(2, 8)])
    assert y.dtype == torch.float16


def test_compute_dtype_rule():
    assert compute_dtype_for(frozenset({DType.FLOAT, DType.HALF})) == torch.float32
    assert compute_dtype_for(frozenset({DType.HALF})) == torch.float16
    assert compute_dtype_for(frozenset({DType.INT8})) == torch.float32


def test_workspace_ceiling():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    engine = builder.build(net, CompileConfig(workspace_size=2 * 4 * 4))
    assert engine.info.workspace_bytes == 2 * 4 * 4
    with pytest.raises(EngineBuildError, match="workspace ceiling"):
        builder.build(net, CompileConfig(workspace_size=16))


def test_safety_capability_needs_static_shapes():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder, ShapeSpec.ranged((1, 8), (2, 8), (4, 8)))
    with pytest.raises(EngineBuildError, match="safety"):
        builder.build(net, CompileConfig.create(capability="safety"))


def test_max_batch_size():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder, ShapeSpec.ranged((1, 8), (2, 8), (4, 8)))
    with pytest.raises(EngineBuildError, match="max_batch_size"):
        builder.build(net, CompileConfig(max_batch_size=2))
    builder.build(net, CompileConfig(max_batch_size=4))


def test_dla_without_gpu_fallback_rejects_unsupported_layers():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    config = CompileConfig.create(enabled_precisions=["half"], device_type="dla")
    with pytest.raises(EngineBuildError, match="cannot run on DLA"):
        builder.build(net, config)


def test_dla_with_gpu_fallback_records_placement():
    builder = TorchEngineBuilder()
    net = _mlp_network(builder)
    config = CompileConfig.create(enabled_precisions=["half"], device_type="dla", dla_core=1, allow_gpu_fallback=True)
    engine = builder.build(net, config)
    kinds = {layer.name: layer.kind for layer in engine.layers}
    assert sorted(kinds[name] for name in engine.info.gpu_fallback_layers) == ["matrix_multiply", "softmax"]
    assert engine.info.device_type == "dla"
    assert engine.info.dla_core == 1


def test_sparse_weights_are_detected():
    builder = TorchEngineBuilder()
    net = builder.create_network("sparse")
    x = net.add_input("x", torch.float32, ShapeSpec.static((2, 8)))
    w = torch.randn(4, 8)
    w[:, ::2] = 0
    (y,) = net.add_layer("matrix_multiply", [x, net.add_constant(w)], transpose_b=True)
    net.mark_output(y)
    engine = builder.build(net, CompileConfig(sparse_weights=True))
    assert engine.info.sparse_layers == ("matrix_multiply_1",)


def test_wide_constants_need_truncation():
    net = Network("wide")
    ctx = ConversionContext(net, CompileConfig(), fx.GraphModule(torch.nn.Module(), fx.Graph()))
    with pytest.raises(EngineBuildError, match="truncate_long_and_double"):
        ctx.constant(torch.arange(3))

    ctx = ConversionContext(
        net, CompileConfig(truncate_long_and_double=True), fx.GraphModule(torch.nn.Module(), fx.Graph())
    )
    assert ctx.constant(torch.arange(3)).dtype == torch.int32
    assert ctx.constant(torch.ones(2, dtype=torch.float64)).dtype == torch.float32


def test_engine_module_state_dict_carries_the_engine(config):
    builder = TorchEngineBuilder()
    engine = builder.build(_mlp_network(builder), config)
    module = EngineModule(engine)
    state = module.state_dict()

    other_builder = TorchEngineBuilder()
    other = EngineModule(other_builder.build(_mlp_network(other_builder), config))
    other.load_state_dict(state)
    x = torch.randn(2, 8)
    torch.testing.assert_close(other(x), module(x))



def test_overlapping_tf32_scopes_restore_the_flags():
    matmul, cudnn = torch.backends.cuda.matmul, torch.backends.cudnn
    saved = (matmul.allow_tf32, cudnn.allow_tf32)
    matmul.allow_tf32 = cudnn.allow_tf32 = True
    try:
        cuda = torch.device("cuda", 0)
        first, second = _tf32(False, cuda), _tf32(False, cuda)
        first.__enter__()
        second.__enter__()
        assert not matmul.allow_tf32 and not cudnn.allow_tf32
        first.__exit__(None, None, None)
        assert not matmul.allow_tf32
        second.__exit__(None, None, None)
        assert matmul.allow_tf32 and cudnn.allow_tf32
    finally:
        matmul.allow_tf32, cudnn.allow_tf32 = saved


@pytest.mark.optional
def test_engine_runs_on_cuda(cuda_device, config):
    builder = TorchEngineBuilder(cuda_device)
    net = _mlp_network(builder)
    engine = builder.build(net, config)
    x = torch.randn(2, 8, device=cuda_device)
    (y,) = engine.execute([x])
    assert y.device.type == "cuda"
    with pytest.raises(EngineRuntimeError, match="runs on"):
        engine.execute([x.cpu()])
