from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional, Sequence, Union

import torch
import torch.fx as fx

from .assemble import assemble_hybrid_graph, engine_graph_module
from .compiler import compile_segment, compile_segments
from .config import CompileConfig
from .converters import ConverterRegistry
from .device import compilation_guard
from .engine_module import EngineModule
from .errors import ConfigurationError
from .fidelity import DEFAULT_THRESHOLD, FidelityReport
from .fidelity import check_fidelity as run_fidelity_check
from .ir import module_device, propagate_shape_specs, trace_program
from .lowering import lower_graph
from .network import CompiledEngine, TorchEngineBuilder
from .partition import PartitionPlan, Segment, classify_nodes, partition_graph, validate_plan
from .types import DType, InputSpec, as_input_spec

logger = logging.getLogger(__name__)

InputLike = Union[InputSpec, str, Sequence[int]]


class HybridProgram(torch.nn.Module):
    """A stitched FX GraphModule whose segments run on compiled engines and the rest in torch."""

    def __init__(
        self,
        graph_module: fx.GraphModule,
        *,
        plan: Optional[PartitionPlan] = None,
        input_specs: Sequence[InputSpec] = (),
    ) -> None:
        super().__init__()
        self.graph_module = graph_module
        self._plan = plan
        self._input_specs = tuple(input_specs)
        self.fidelity_report: Optional[FidelityReport] = None

    @property
    def plan(self) -> Optional[PartitionPlan]:
        return self._plan

    @property
    def input_specs(self) -> tuple[InputSpec, ...]:
        return self._input_specs

    @property
    def engines(self) -> dict[str, CompiledEngine]:
        return {
            name: mod.engine for name, mod in self.graph_module.named_children() if isinstance(mod, EngineModule)
        }

    def forward(self, *args: Any, **kwargs: Any) -> Any:
        # Engines run without autograd; keep torch-side ops consistent with them.
        with torch.inference_mode():
            return self.graph_module(*args, **kwargs)


def _lowered_graph(module: torch.nn.Module, specs: Sequence[InputSpec], config: CompileConfig) -> fx.GraphModule:
    """Trace, lower and shape-annotate ``module`` for the given input specs."""

    device = module_device(module)
    gm = trace_program(
        module,
        example_inputs=[s.example(device=device) for s in specs],
        is_leaf=lambda m, name: config.is_module_excluded(name, type(m)),
    )
    lower_graph(gm, config)
    propagate_shape_specs(gm, specs)
    return gm


def compile_program(
    module: torch.nn.Module,
    inputs: Sequence[InputLike],
    config: Optional[CompileConfig] = None,
    *,
    registry: Optional[ConverterRegistry] = None,
    builder: Optional[TorchEngineBuilder] = None,
    check_fidelity: bool = True,
    threshold: float = DEFAULT_THRESHOLD,
    skip_threshold_check: bool = False,
) -> HybridProgram:
    """Compile ``module`` into a hybrid program.

    Steps:
    - Trace to FX and run the lowering passes.
    - Propagate min/opt/max shapes from ``inputs``.
    - Partition into engine segments and torch fallback blocks.
    - Build one engine per segment and stitch them into a new graph.
    - Compare the result against ``module`` unless disabled.

    The source module is not modified.
    """

    config = config or CompileConfig()
    specs = [as_input_spec(s) for s in inputs]
    with compilation_guard():
        gm = _lowered_graph(module, specs, config)
        plan = partition_graph(gm, registry, config)
        validate_plan(plan, gm)
        logger.info("partitioned %s: %s", type(module).__name__, plan.summary())
        engines = compile_segments(gm, plan, config, registry, builder)
        program = HybridProgram(assemble_hybrid_graph(gm, plan, engines), plan=plan, input_specs=specs)

    if check_fidelity:
        program.fidelity_report = run_fidelity_check(
            module,
            program,
            specs,
            config,
            threshold=threshold,
            skip=skip_threshold_check,
            device=module_device(module),
        )
    return program


def _standalone_segment(gm: fx.GraphModule, segment: Segment) -> Segment:
    """Rebind a whole-graph segment to the graph's own inputs and outputs, in order."""

    placeholders = tuple(n for n in gm.graph.nodes if n.op == "placeholder")
    (output,) = [n for n in gm.graph.nodes if n.op == "output"]
    result = output.args[0]
    outputs = (result,) if isinstance(result, fx.Node) else tuple(result) if isinstance(result, (list, tuple)) else ()
    members = set(segment.nodes)
    if not outputs or not all(isinstance(o, fx.Node) and o in members for o in outputs):
        raise ConfigurationError(
            "A standalone engine must return one tensor or a flat tuple of tensors computed by the engine"
        )
    return dataclasses.replace(segment, inputs=placeholders, outputs=outputs)


def convert_to_engine(
    module: torch.nn.Module,
    inputs: Sequence[InputLike],
    config: Optional[CompileConfig] = None,
    *,
    registry: Optional[ConverterRegistry] = None,
    builder: Optional[TorchEngineBuilder] = None,
) -> bytes:
    """Compile ``module`` into a single serialized engine.

    Raises ``ConfigurationError`` unless the whole program converts into exactly
    one segment with nothing left to run in torch.
    """

    config = config or CompileConfig()
    specs = [as_input_spec(s) for s in inputs]
    with compilation_guard():
        gm = _lowered_graph(module, specs, config)
        plan = partition_graph(gm, registry, config)
        validate_plan(plan, gm)
        if not plan.is_fully_converted:
            raise ConfigurationError(
                "Saving a standalone engine requires the whole program to convert into one engine; "
                f"got {len(plan.segments)} segment(s) and {len(plan.fallback_nodes)} node(s) that run in torch"
            )
        engine = compile_segment(gm, _standalone_segment(gm, plan.segments[0]), config, registry, builder)
    return engine.serialize()


def check_operator_support(
    module: torch.nn.Module,
    inputs: Sequence[InputLike],
    config: Optional[CompileConfig] = None,
    *,
    registry: Optional[ConverterRegistry] = None,
) -> bool:
    """True if every operation of ``module`` can be converted."""

    config = config or CompileConfig()
    specs = [as_input_spec(s) for s in inputs]
    with compilation_guard():
        gm = _lowered_graph(module, specs, config)
        decisions = classify_nodes(gm, registry, config)
    unsupported = [d for d in decisions.values() if not d.eligible]
    if unsupported:
        logger.warning(
            "Unsupported operators:\n%s",
            "\n".join(f"  {d.node.name} ({d.kind}): {d.reason}" for d in unsupported),
        )
        return False
    return True


def embed_engine(engine_bytes: bytes, *, device: Optional[torch.device] = None) -> HybridProgram:
    """Wrap a serialized engine into a program that runs it directly."""

    engine = CompiledEngine.deserialize(engine_bytes, device=device)
    specs = [InputSpec(b.shape, DType.from_torch(b.accepts)) for b in engine.input_bindings]
    return HybridProgram(engine_graph_module(engine), input_specs=specs)
