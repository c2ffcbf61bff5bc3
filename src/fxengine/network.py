"""In-process accelerator builder.

A ``Network`` is a flat list of typed layers over numbered tensors. The
``TorchEngineBuilder`` checks a network against the build options and freezes it
into a ``CompiledEngine`` that executes every layer with torch kernels.

The builder contract used by the compiler is deliberately narrow::

    network = builder.create_network(name)
    x = network.add_input(name, dtype, shape_spec)
    (y,) = network.add_layer(kind, [x], origin=node_name, **attrs)
    network.mark_output(y)
    engine = builder.build(network, config)
    outputs = engine.execute(inputs)
    data = engine.serialize()
"""

from __future__ import annotations

import contextlib
import dataclasses
import io
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

import torch
import torch.nn.functional as F

from .config import CompileConfig, DeviceType, EngineCapability
from .errors import EngineBuildError, EngineRuntimeError
from .types import DType, ShapeSpec

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


@dataclass(frozen=True)
class NetworkTensor:
    index: int
    name: str
    dtype: torch.dtype
    # Shape at the opt profile point.
    shape: tuple[int, ...]


@dataclass(frozen=True)
class Layer:
    name: str
    kind: str
    inputs: tuple[int, ...]
    outputs: tuple[int, ...]
    attrs: dict[str, Any] = field(default_factory=dict)
    # Name of the graph node the layer was converted from.
    origin: Optional[str] = None


@dataclass(frozen=True)
class InputBinding:
    name: str
    index: int
    dtype: torch.dtype
    shape: ShapeSpec
    # dtype callers pass; differs from ``dtype`` when 64-bit inputs are truncated.
    accepts: torch.dtype


@dataclass(frozen=True)
class OutputBinding:
    name: str
    index: int
    dtype: torch.dtype


@dataclass(frozen=True)
class EngineInfo:
    """Build-time facts recorded on an engine."""

    device_type: str = DeviceType.GPU.value
    dla_core: int = 0
    capability: str = EngineCapability.STANDARD.value
    precisions: tuple[str, ...] = (DType.FLOAT.value,)
    gpu_fallback_layers: tuple[str, ...] = ()
    workspace_bytes: int = 0
    timing_iterations: tuple[int, int] = (2, 1)
    latency_ms: float = 0.0
    sparse_layers: tuple[str, ...] = ()


# ----------------------------------------------------------------------------
# layer kernels
# ----------------------------------------------------------------------------

_ACTIVATIONS: dict[str, Callable[..., torch.Tensor]] = {
    "relu": lambda x, a: torch.relu(x),
    "sigmoid": lambda x, a: torch.sigmoid(x),
    "tanh": lambda x, a: torch.tanh(x),
    "leaky_relu": lambda x, a: F.leaky_relu(x, a["alpha"]),
    "elu": lambda x, a: F.elu(x, a["alpha"]),
    "clip": lambda x, a: torch.clamp(x, a.get("alpha"), a.get("beta")),
    "gelu_erf": lambda x, a: F.gelu(x),
    "gelu_tanh": lambda x, a: F.gelu(x, approximate="tanh"),
}

_ELEMENTWISE: dict[str, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = {
    "sum": torch.add,
    "sub": torch.sub,
    "prod": torch.mul,
    "div": torch.div,
    "pow": torch.pow,
    "max": torch.maximum,
    "min": torch.minimum,
}

_UNARY = ("exp", "log", "sqrt", "rsqrt", "abs", "neg", "erf")

_CONVOLUTIONS = {1: F.conv1d, 2: F.conv2d, 3: F.conv3d}


def _shuffle(x: torch.Tensor, a: dict[str, Any]) -> torch.Tensor:
    op = a["op"]
    if op == "reshape":
        return torch.reshape(x, a["shape"])
    if op == "flatten":
        return torch.flatten(x, a["start_dim"], a["end_dim"])
    if op == "permute":
        return x.permute(a["dims"])
    if op == "transpose":
        return x.transpose(a["dim0"], a["dim1"])
    if op == "unsqueeze":
        return x.unsqueeze(a["dim"])
    if op == "squeeze":
        return x.squeeze(a["dim"])
    raise KeyError(op)


def _reduce(x: torch.Tensor, a: dict[str, Any]) -> torch.Tensor:
    fn = {"sum": torch.sum, "mean": torch.mean}[a["op"]]
    if a.get("dims") is None:
        return fn(x)
    return fn(x, dim=a["dims"], keepdim=a.get("keepdim", False))


def _convolution(xs: list[torch.Tensor], a: dict[str, Any]) -> torch.Tensor:
    x, w, *rest = xs
    bias = rest[0] if rest else None
    return _CONVOLUTIONS[a["nd"]](x, w, bias, a["stride"], a["padding"], a["dilation"], a["groups"])


def _identity(x: torch.Tensor, a: dict[str, Any]) -> torch.Tensor:
    dtype = a.get("dtype")
    return x if dtype is None else x.to(_dtype_from_str(dtype))


_LAYER_KERNELS: dict[str, Callable[[list[torch.Tensor], dict[str, Any]], list[torch.Tensor]]] = {
    "constant": lambda xs, a: [a["value"]],
    "activation": lambda xs, a: [_ACTIVATIONS[a["type"]](xs[0], a)],
    "parametric_relu": lambda xs, a: [F.prelu(xs[0], xs[1])],
    "elementwise": lambda xs, a: [_ELEMENTWISE[a["op"]](xs[0], xs[1])],
    "unary": lambda xs, a: [getattr(torch, a["op"])(xs[0])],
    "matrix_multiply": lambda xs, a: [torch.matmul(xs[0], xs[1].transpose(-1, -2) if a.get("transpose_b") else xs[1])],
    "convolution": lambda xs, a: [_convolution(xs, a)],
    "shuffle": lambda xs, a: [_shuffle(xs[0], a)],
    "padding": lambda xs, a: [F.pad(xs[0], a["pad"], value=a["value"])],
    "softmax": lambda xs, a: [torch.softmax(xs[0], a["dim"])],
    "reduce": lambda xs, a: [_reduce(xs[0], a)],
    "concatenation": lambda xs, a: [torch.cat(xs, a["dim"])],
    "identity": lambda xs, a: [_identity(xs[0], a)],
}

LAYER_KINDS = frozenset(_LAYER_KERNELS)

# Layers the fixed-function (DLA) target can run.
_DLA_LAYER_KINDS = frozenset(
    {"constant", "activation", "parametric_relu", "elementwise", "convolution", "shuffle", "padding", "concatenation", "identity"}
)

# Layers whose kernels need scratch memory proportional to their output.
_SCRATCH_LAYER_KINDS = frozenset({"matrix_multiply", "convolution"})


def _dtype_to_str(dtype: torch.dtype) -> str:
    return str(dtype).rsplit(".", 1)[-1]


def _dtype_from_str(name: str) -> torch.dtype:
    dtype = getattr(torch, name, None)
    if not isinstance(dtype, torch.dtype):
        raise EngineRuntimeError(f"Unknown dtype {name!r} in engine")
    return dtype


def _on_meta(value: Any) -> Any:
    return value.to("meta") if isinstance(value, torch.Tensor) else value


# ----------------------------------------------------------------------------
# network
# ----------------------------------------------------------------------------


class Network:
    """A layer list under construction. Output metadata is inferred as layers are added."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tensors: list[NetworkTensor] = []
        self._layers: list[Layer] = []
        self._inputs: list[InputBinding] = []
        self._outputs: list[OutputBinding] = []

    @property
    def layers(self) -> list[Layer]:
        return list(self._layers)

    @property
    def inputs(self) -> list[InputBinding]:
        return list(self._inputs)

    @property
    def outputs(self) -> list[OutputBinding]:
        return list(self._outputs)

    def tensor(self, index: int) -> NetworkTensor:
        return self._tensors[index]

    def _new_tensor(self, name: str, dtype: torch.dtype, shape: Sequence[int]) -> NetworkTensor:
        t = NetworkTensor(len(self._tensors), name, dtype, tuple(shape))
        self._tensors.append(t)
        return t

    def add_input(
        self, name: str, dtype: torch.dtype, shape: ShapeSpec, *, accepts: Optional[torch.dtype] = None
    ) -> NetworkTensor:
        if any(b.name == name for b in self._inputs):
            raise EngineBuildError(f"Duplicate network input {name!r}")
        t = self._new_tensor(name, dtype, shape.opt_shape)
        self._inputs.append(InputBinding(name, t.index, dtype, shape, accepts or dtype))
        return t

    def add_layer(
        self,
        kind: str,
        inputs: Sequence[NetworkTensor],
        *,
        origin: Optional[str] = None,
        name: Optional[str] = None,
        **attrs: Any,
    ) -> tuple[NetworkTensor, ...]:
        kernel = _LAYER_KERNELS.get(kind)
        if kernel is None:
            raise EngineBuildError(f"Unknown layer kind {kind!r}", node=origin)
        for t in inputs:
            if not (0 <= t.index < len(self._tensors)) or self._tensors[t.index] is not t:
                raise EngineBuildError(f"Layer {kind!r} uses a tensor from another network", node=origin)

        metas = [torch.empty(t.shape, dtype=t.dtype, device="meta") for t in inputs]
        try:
            outs = kernel(metas, {k: _on_meta(v) for k, v in attrs.items()})
        except Exception as e:
            raise EngineBuildError(f"Layer {kind!r} rejected its inputs: {e}", node=origin) from e

        layer_name = name or f"{kind}_{len(self._layers)}"
        out_tensors = tuple(
            self._new_tensor(f"{layer_name}:{i}", o.dtype, o.shape) for i, o in enumerate(outs)
        )
        self._layers.append(
            Layer(
                name=layer_name,
                kind=kind,
                inputs=tuple(t.index for t in inputs),
                outputs=tuple(t.index for t in out_tensors),
                attrs=dict(attrs),
                origin=origin,
            )
        )
        return out_tensors

    def add_constant(self, value: torch.Tensor, *, origin: Optional[str] = None) -> NetworkTensor:
        (t,) = self.add_layer("constant", (), origin=origin, value=value.detach())
        return t

    def mark_output(self, tensor: NetworkTensor, *, name: Optional[str] = None, dtype: Optional[torch.dtype] = None) -> None:
        """Expose a tensor as an engine output, optionally cast to ``dtype``."""

        self._outputs.append(OutputBinding(name or f"output_{len(self._outputs)}", tensor.index, dtype or tensor.dtype))


# ----------------------------------------------------------------------------
# engine
# ----------------------------------------------------------------------------


_tf32_lock = threading.Lock()
_tf32_holders = 0
_tf32_saved: tuple[bool, bool] = (False, False)


@contextlib.contextmanager
def _tf32(allowed: bool, device: torch.device) -> Iterator[None]:
    """Turn TF32 off while any engine that disables it is running.

    The torch flags are process-wide: the first holder saves them and the last
    one to leave restores them, whatever order holders leave in.
    """

    global _tf32_holders, _tf32_saved
    if allowed or device.type != "cuda":
        yield
        return
    with _tf32_lock:
        if _tf32_holders == 0:
            _tf32_saved = (torch.backends.cuda.matmul.allow_tf32, torch.backends.cudnn.allow_tf32)
            torch.backends.cuda.matmul.allow_tf32 = False
            torch.backends.cudnn.allow_tf32 = False
        _tf32_holders += 1
    try:
        yield
    finally:
        with _tf32_lock:
            _tf32_holders -= 1
            if _tf32_holders == 0:
                torch.backends.cuda.matmul.allow_tf32, torch.backends.cudnn.allow_tf32 = _tf32_saved


class CompiledEngine:
    """An immutable built network. ``execute`` keeps all state local to the call."""

    def __init__(
        self,
        *,
        name: str,
        layers: Sequence[Layer],
        inputs: Sequence[InputBinding],
        outputs: Sequence[OutputBinding],
        compute_dtype: torch.dtype,
        device: torch.device,
        strict_types: bool = False,
        debug: bool = False,
        allow_tf32: bool = True,
        info: Optional[EngineInfo] = None,
    ) -> None:
        self._name = name
        self._layers = tuple(layers)
        self._inputs = tuple(inputs)
        self._outputs = tuple(outputs)
        self._compute_dtype = compute_dtype
        if device.type == "cuda" and device.index is None:
            device = torch.device("cuda", torch.cuda.current_device())
        self._device = device
        self._strict_types = strict_types
        self._debug = debug
        self._allow_tf32 = allow_tf32
        self._info = info or EngineInfo()

    @property
    def name(self) -> str:
        return self._name

    @property
    def input_bindings(self) -> tuple[InputBinding, ...]:
        return self._inputs

    @property
    def output_bindings(self) -> tuple[OutputBinding, ...]:
        return self._outputs

    @property
    def layers(self) -> tuple[Layer, ...]:
        return self._layers

    @property
    def compute_dtype(self) -> torch.dtype:
        return self._compute_dtype

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def info(self) -> EngineInfo:
        return self._info

    def __repr__(self) -> str:
        return (
            f"CompiledEngine(name={self._name!r}, layers={len(self._layers)}, "
            f"inputs={len(self._inputs)}, outputs={len(self._outputs)}, compute_dtype={self._compute_dtype})"
        )

    def _bind(self, inputs: Sequence[torch.Tensor]) -> dict[int, torch.Tensor]:
        if len(inputs) != len(self._inputs):
            raise EngineRuntimeError(f"Engine {self._name!r} expects {len(self._inputs)} input(s), got {len(inputs)}")
        values: dict[int, torch.Tensor] = {}
        for binding, t in zip(self._inputs, inputs):
            if not isinstance(t, torch.Tensor):
                raise EngineRuntimeError(f"Input {binding.name!r} must be a tensor, got {type(t).__name__}")
            if t.dtype not in (binding.dtype, binding.accepts):
                raise EngineRuntimeError(f"Input {binding.name!r} has dtype {t.dtype}, engine expects {binding.accepts}")
            if not binding.shape.contains(t.shape):
                raise EngineRuntimeError(
                    f"Input {binding.name!r} has shape {tuple(t.shape)} outside the engine profile {binding.shape}"
                )
            if t.device != self._device:
                raise EngineRuntimeError(f"Input {binding.name!r} is on {t.device}, engine {self._name!r} runs on {self._device}")
            values[binding.index] = self._to_compute(t.to(binding.dtype))
        return values

    def _to_compute(self, t: torch.Tensor) -> torch.Tensor:
        if t.is_floating_point() and t.dtype != self._compute_dtype:
            return t.to(self._compute_dtype)
        return t

    def _run(self, values: dict[int, torch.Tensor], *, building: bool = False) -> None:
        for layer in self._layers:
            try:
                outs = _LAYER_KERNELS[layer.kind]([values[i] for i in layer.inputs], layer.attrs)
            except Exception as e:
                if building:
                    raise EngineBuildError(f"Layer {layer.name!r} ({layer.kind}) failed: {e}", node=layer.origin) from e
                raise EngineRuntimeError(
                    f"Layer {layer.name!r} ({layer.kind}) from node {layer.origin!r} failed: {e}"
                ) from e
            for index, out in zip(layer.outputs, outs):
                values[index] = out
            if self._debug:
                logger.debug(
                    "%s: %s %s -> %s", self._name, layer.kind, layer.name, [tuple(o.shape) for o in outs]
                )

    def _collect(self, values: dict[int, torch.Tensor]) -> list[torch.Tensor]:
        results = []
        for binding in self._outputs:
            out = values[binding.index]
            if out.dtype != binding.dtype:
                out = out.to(binding.dtype)
            results.append(out)
        return results

    def execute(self, inputs: Sequence[torch.Tensor]) -> list[torch.Tensor]:
        values = self._bind(inputs)
        with torch.no_grad(), _tf32(self._allow_tf32, self._device):
            self._run(values)
        return self._collect(values)

    def __call__(self, *inputs: torch.Tensor) -> list[torch.Tensor]:
        return self.execute(inputs)

    def profile(self, min_iters: int, avg_iters: int) -> float:
        """Run the engine on zero inputs at the opt shapes; return mean latency in ms."""

        examples = [torch.zeros(b.shape.opt_shape, dtype=b.accepts, device=self._device) for b in self._inputs]
        elapsed = 0.0
        with torch.no_grad(), _tf32(self._allow_tf32, self._device):
            for i in range(min_iters + avg_iters):
                values = self._bind(examples)
                start = time.perf_counter()
                self._run(values, building=True)
                if self._device.type == "cuda":
                    torch.cuda.synchronize(self._device)
                if i >= min_iters:
                    elapsed += time.perf_counter() - start
        return 1000.0 * elapsed / avg_iters

    def serialize(self) -> bytes:
        payload = {
            "format": _FORMAT_VERSION,
            "name": self._name,
            "device": str(self._device),
            "compute_dtype": _dtype_to_str(self._compute_dtype),
            "strict_types": self._strict_types,
            "debug": self._debug,
            "allow_tf32": self._allow_tf32,
            "inputs": [
                (b.name, b.index, _dtype_to_str(b.dtype), _dtype_to_str(b.accepts), b.shape.min_shape, b.shape.opt_shape, b.shape.max_shape)
                for b in self._inputs
            ],
            "outputs": [(b.name, b.index, _dtype_to_str(b.dtype)) for b in self._outputs],
            "layers": [
                {
                    "name": layer.name,
                    "kind": layer.kind,
                    "inputs": layer.inputs,
                    "outputs": layer.outputs,
                    "attrs": {k: v.cpu() if isinstance(v, torch.Tensor) else v for k, v in layer.attrs.items()},
                    "origin": layer.origin,
                }
                for layer in self._layers
            ],
            "info": dataclasses.asdict(self._info),
        }
        buf = io.BytesIO()
        torch.save(payload, buf)
        return buf.getvalue()

    @staticmethod
    def deserialize(data: bytes, *, device: Optional[torch.device] = None) -> "CompiledEngine":
        try:
            payload = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
        except Exception as e:
            raise EngineRuntimeError(f"Not a serialized engine: {e}") from e
        if not isinstance(payload, dict) or payload.get("format") != _FORMAT_VERSION:
            raise EngineRuntimeError("Unsupported serialized engine format")

        if device is None:
            device = torch.device(payload["device"])
            if device.type == "cuda" and not torch.cuda.is_available():
                device = torch.device("cpu")
        layers = []
        for entry in payload["layers"]:
            attrs = {k: v.to(device) if isinstance(v, torch.Tensor) else v for k, v in entry["attrs"].items()}
            layers.append(
                Layer(entry["name"], entry["kind"], tuple(entry["inputs"]), tuple(entry["outputs"]), attrs, entry["origin"])
            )
        inputs = [
            InputBinding(name, index, _dtype_from_str(dtype), ShapeSpec(tuple(lo), tuple(opt), tuple(hi)), _dtype_from_str(accepts))
            for name, index, dtype, accepts, lo, opt, hi in payload["inputs"]
        ]
        outputs = [OutputBinding(name, index, _dtype_from_str(dtype)) for name, index, dtype in payload["outputs"]]
        info = payload["info"]
        info = EngineInfo(**{k: tuple(v) if isinstance(v, list) else v for k, v in info.items()})
        return CompiledEngine(
            name=payload["name"],
            layers=layers,
            inputs=inputs,
            outputs=outputs,
            compute_dtype=_dtype_from_str(payload["compute_dtype"]),
            device=device,
            strict_types=payload["strict_types"],
            debug=payload["debug"],
            allow_tf32=payload["allow_tf32"],
            info=info,
        )


# ----------------------------------------------------------------------------
# builder
# ----------------------------------------------------------------------------


def compute_dtype_for(precisions: frozenset[DType]) -> torch.dtype:
    """fp32 if enabled, else fp16 if enabled, else fp32."""

    if DType.FLOAT in precisions:
        return torch.float32
    if DType.HALF in precisions:
        return torch.float16
    return torch.float32


def _is_2_4_sparse(w: torch.Tensor) -> bool:
    if w.dim() < 2 or w.shape[-1] % 4:
        return False
    groups = w.detach().reshape(-1, 4)
    return bool(((groups == 0).sum(dim=1) >= 2).all())


def _numel(shape: Sequence[int]) -> int:
    n = 1
    for d in shape:
        n *= d
    return n


class TorchEngineBuilder:
    """Builds ``Network``s into ``CompiledEngine``s that run on ``device``."""

    def __init__(self, device: Optional[torch.device] = None) -> None:
        self.device = device or torch.device("cpu")

    def create_network(self, name: str = "network") -> Network:
        return Network(name)

    def build(self, network: Network, config: CompileConfig) -> CompiledEngine:
        if not network.outputs:
            raise EngineBuildError(f"Network {network.name!r} has no outputs")

        compute_dtype = compute_dtype_for(config.enabled_precisions)
        if DType.INT8 in config.enabled_precisions and config.calibrator is None:
            logger.info(
                "%s: int8 is enabled without a calibrator; layers run at %s", network.name, compute_dtype
            )

        self._check_profiles(network, config)
        gpu_fallback_layers = self._place_layers(network, config)

        layers = []
        sparse_layers = []
        # weight tensor index -> name of the layer it feeds
        weight_users: dict[int, str] = {}
        for layer in network.layers:
            if layer.kind in _SCRATCH_LAYER_KINDS and len(layer.inputs) > 1:
                weight_users[layer.inputs[1]] = layer.name
        for layer in network.layers:
            attrs = layer.attrs
            if layer.kind == "constant":
                value = attrs["value"].to(self.device)
                if value.is_floating_point():
                    value = value.to(compute_dtype)
                attrs = {**attrs, "value": value}
                if config.sparse_weights and layer.outputs[0] in weight_users and _is_2_4_sparse(value):
                    sparse_layers.append(weight_users[layer.outputs[0]])
            layers.append(dataclasses.replace(layer, attrs=attrs))
        if config.sparse_weights:
            logger.info(
                "%s: %d of %d weighted layer(s) are eligible for sparse kernels",
                network.name,
                len(sparse_layers),
                len(set(weight_users.values())),
            )

        workspace = self._check_workspace(network, config, compute_dtype)

        outputs = network.outputs
        if config.strict_types:
            outputs = [
                OutputBinding(b.name, b.index, compute_dtype) if b.dtype.is_floating_point else b for b in outputs
            ]

        info = EngineInfo(
            device_type=config.device.device_type.value,
            dla_core=config.device.dla_core,
            capability=config.capability.value,
            precisions=tuple(sorted(p.value for p in config.enabled_precisions)),
            gpu_fallback_layers=tuple(gpu_fallback_layers),
            workspace_bytes=workspace,
            timing_iterations=(config.num_min_timing_iters, config.num_avg_timing_iters),
            sparse_layers=tuple(sparse_layers),
        )
        engine = CompiledEngine(
            name=network.name,
            layers=layers,
            inputs=network.inputs,
            outputs=outputs,
            compute_dtype=compute_dtype,
            device=self.device,
            strict_types=config.strict_types,
            debug=config.debug,
            allow_tf32=not config.disable_tf32,
            info=info,
        )
        latency = engine.profile(config.num_min_timing_iters, config.num_avg_timing_iters)
        engine._info = dataclasses.replace(info, latency_ms=latency)
        logger.info(
            "built engine %s: %d layer(s), compute dtype %s, %.3f ms at opt shapes",
            network.name,
            len(layers),
            compute_dtype,
            latency,
        )
        return engine

    def _check_profiles(self, network: Network, config: CompileConfig) -> None:
        for binding in network.inputs:
            if binding.shape.is_dynamic and config.capability is EngineCapability.SAFETY:
                raise EngineBuildError(
                    f"Input {binding.name!r} has a ranged shape {binding.shape}; the safety capability needs static shapes"
                )
            if config.max_batch_size and binding.shape.rank and binding.shape.max_shape[0] > config.max_batch_size:
                raise EngineBuildError(
                    f"Input {binding.name!r} allows batch {binding.shape.max_shape[0]}, "
                    f"above max_batch_size {config.max_batch_size}"
                )

    def _place_layers(self, network: Network, config: CompileConfig) -> list[str]:
        """Names of layers placed on the GPU because the DLA cannot run them."""

        device = config.device
        if device.device_type is not DeviceType.DLA:
            return []
        dla_precision = bool({DType.HALF, DType.INT8} & config.enabled_precisions)
        if not dla_precision:
            logger.warning("DLA needs fp16 or int8 precision; no layer of %s can run on DLA", network.name)
        fallback = []
        for layer in network.layers:
            if dla_precision and layer.kind in _DLA_LAYER_KINDS:
                continue
            if not device.allow_gpu_fallback:
                raise EngineBuildError(
                    f"Layer {layer.name!r} ({layer.kind}) cannot run on DLA core {device.dla_core} "
                    "and GPU fallback is disabled",
                    node=layer.origin,
                )
            fallback.append(layer.name)
        if fallback:
            logger.info("%s: %d layer(s) fall back to the GPU", network.name, len(fallback))
        return fallback

    def _check_workspace(self, network: Network, config: CompileConfig, compute_dtype: torch.dtype) -> int:
        itemsize = torch.empty((), dtype=compute_dtype).element_size()
        peak = 0
        for layer in network.layers:
            if layer.kind not in _SCRATCH_LAYER_KINDS:
                continue
            need = sum(_numel(network.tensor(i).shape) for i in layer.outputs) * itemsize
            if config.workspace_size and need > config.workspace_size:
                raise EngineBuildError(
                    f"Layer {layer.name!r} needs {need} bytes of scratch memory, "
                    f"workspace ceiling is {config.workspace_size}",
                    node=layer.origin,
                )
            peak = max(peak, need)
        return peak
