"""Stitch compiled engines back into an executable FX graph."""

from __future__ import annotations

import logging
import operator
from typing import Any

import torch.fx as fx

from .engine_module import EngineModule
from .errors import PartitionError
from .ir import fetch_attr
from .network import CompiledEngine
from .partition import BlockKind, PartitionPlan

logger = logging.getLogger(__name__)


def assemble_hybrid_graph(
    gm: fx.GraphModule, plan: PartitionPlan, engines: dict[str, CompiledEngine]
) -> fx.GraphModule:
    """Build a new GraphModule in which every segment is one ``call_module``.

    Fallback nodes, placeholders and the output node are copied unchanged. A
    segment is emitted where its first node was; every value it exports is
    rebound to the matching engine output.
    """

    segment_of: dict[fx.Node, Any] = {}
    for block in plan.blocks:
        if block.kind is BlockKind.ENGINE:
            for node in block.nodes:
                segment_of[node] = block.segment

    runtime_inputs = {i for s in plan.segments for i in s.inputs}
    graph = fx.Graph()
    env: dict[fx.Node, fx.Node] = {}
    root: dict[str, Any] = {}
    emitted: set[str] = set()

    for node in gm.graph.nodes:
        segment = segment_of.get(node)
        if segment is None:
            if node.op == "get_attr" and node not in runtime_inputs and all(u in segment_of for u in node.users):
                # Only read by engines, which captured it as a constant.
                continue
            if node.op == "get_attr":
                root[node.target] = fetch_attr(gm, node.target)
            elif node.op == "call_module":
                root[node.target] = gm.get_submodule(node.target)
            env[node] = graph.node_copy(node, lambda n: env[n])
            continue

        if segment.name in emitted:
            continue
        engine = engines.get(segment.name)
        if engine is None:
            raise PartitionError(f"No engine was built for {segment.name}")
        root[segment.name] = EngineModule(engine, num_outputs=len(segment.outputs))
        call = graph.call_module(segment.name, tuple(env[i] for i in segment.inputs))
        if len(segment.outputs) == 1:
            env[segment.outputs[0]] = call
        else:
            for i, out in enumerate(segment.outputs):
                env[out] = graph.call_function(operator.getitem, (call, i))
        emitted.add(segment.name)

    hybrid = fx.GraphModule(root, graph, class_name="HybridGraphModule")
    hybrid.graph.lint()
    hybrid.recompile()
    logger.debug("assembled hybrid graph:\n%s", hybrid.code)
    return hybrid


def engine_graph_module(engine: CompiledEngine) -> fx.GraphModule:
    """A graph that feeds its inputs straight into ``engine``."""

    graph = fx.Graph()
    inputs = [graph.placeholder(b.name) for b in engine.input_bindings]
    call = graph.call_module("engine", tuple(inputs))
    if len(engine.output_bindings) == 1:
        graph.output(call)
    else:
        graph.output(tuple(graph.call_function(operator.getitem, (call, i)) for i in range(len(engine.output_bindings))))
    root = {"engine": EngineModule(engine, num_outputs=len(engine.output_bindings))}
    gm = fx.GraphModule(root, graph, class_name="EngineGraphModule")
    gm.graph.lint()
    return gm
