from __future__ import annotations

import logging
from typing import Optional

import torch
import torch.fx as fx

from .config import CompileConfig
from .converters import DEFAULT_REGISTRY, ConversionContext, ConverterRegistry
from .errors import EngineBuildError
from .ir import module_device, shape_spec, tensor_meta
from .network import CompiledEngine, TorchEngineBuilder
from .partition import PartitionPlan, Segment
from .types import truncated_dtype

logger = logging.getLogger(__name__)

_WIDE_DTYPES = (torch.int64, torch.float64)

EngineCache = dict[tuple[str, int], CompiledEngine]


def compile_segment(
    gm: fx.GraphModule,
    segment: Segment,
    config: CompileConfig,
    registry: Optional[ConverterRegistry] = None,
    builder: Optional[TorchEngineBuilder] = None,
) -> CompiledEngine:
    """Convert the nodes of one segment into a network and build it.

    Any build failure is reported as ``EngineBuildError`` naming the segment.
    """

    registry = registry or DEFAULT_REGISTRY
    builder = builder or TorchEngineBuilder(module_device(gm))
    network = builder.create_network(segment.name)
    ctx = ConversionContext(network, config, gm)
    try:
        for value in segment.inputs:
            meta, spec = tensor_meta(value), shape_spec(value)
            if meta is None or spec is None:
                raise EngineBuildError(f"Input {value.name} has no propagated tensor metadata", node=value.name)
            dtype = meta.dtype
            if dtype in _WIDE_DTYPES:
                if not config.truncate_long_and_double:
                    raise EngineBuildError(
                        f"Input {value.name} has dtype {dtype}; enable truncate_long_and_double to convert it",
                        node=value.name,
                    )
                dtype = truncated_dtype(dtype)
            ctx.value_map[value] = network.add_input(value.name, dtype, spec, accepts=meta.dtype)

        for node, kind in zip(segment.nodes, segment.kinds):
            out = registry.convert(ctx, node, kind)
            logger.debug("%s: converted %s (%s) -> %s %s", segment.name, node.name, kind, out.shape, out.dtype)

        for value in segment.outputs:
            network.mark_output(ctx.value_map[value], name=value.name, dtype=tensor_meta(value).dtype)
        return builder.build(network, config)
    except EngineBuildError as e:
        if e.segment is not None:
            raise
        raise EngineBuildError(e.reason, segment=segment.name, node=e.node) from e


def compile_segments(
    gm: fx.GraphModule,
    plan: PartitionPlan,
    config: CompileConfig,
    registry: Optional[ConverterRegistry] = None,
    builder: Optional[TorchEngineBuilder] = None,
    cache: Optional[EngineCache] = None,
) -> dict[str, CompiledEngine]:
    """Build one engine per segment of ``plan``.

    ``cache`` lives for one compilation; keys are ``(segment name, id(config))``
    since the calibrator in a config need not be hashable.
    """

    cache = {} if cache is None else cache
    engines: dict[str, CompiledEngine] = {}
    for segment in plan.segments:
        key = (segment.name, id(config))
        engine = cache.get(key)
        if engine is None:
            engine = compile_segment(gm, segment, config, registry, builder)
            cache[key] = engine
        engines[segment.name] = engine
    logger.info("compiled %d engine(s) for %s", len(engines), type(gm).__name__)
    return engines
