"""Split a lowered graph into engine segments and torch fallback blocks.

Policy:
- Traverse compute nodes in fx order and classify each one.
- Consecutive eligible nodes form a run; every run becomes one segment.
- A run may only exchange tensors with the rest of the graph, must have at
  least one live output and must reach ``min_block_size``. Nodes that break
  these rules are demoted to fallback and runs are re-formed until nothing
  changes.

Runs never reach across a fallback node, so the plan preserves fx order.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

import torch
import torch.fx as fx

from .config import CompileConfig
from .converters import DEFAULT_REGISTRY, ConverterRegistry
from .errors import PartitionError, UnsupportedOperationError
from .ir import COMPUTE_OPS, module_stack, mutated_attributes, node_kind, qualified_type_name, tensor_meta

ELIGIBLE = "eligible"


class BlockKind(enum.Enum):
    ENGINE = "engine"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class NodeDecision:
    """Why a compute node was or was not put into a segment."""

    node: fx.Node
    kind: str
    eligible: bool
    reason: str = ELIGIBLE


@dataclass(frozen=True)
class Segment:
    name: str
    nodes: tuple[fx.Node, ...]
    kinds: tuple[str, ...]
    # Values produced outside the segment, in order of first use. Constants excluded.
    inputs: tuple[fx.Node, ...]
    # Values read after the segment or by the graph output, in fx order.
    outputs: tuple[fx.Node, ...]

    def __len__(self) -> int:
        return len(self.nodes)


@dataclass(frozen=True)
class Block:
    kind: BlockKind
    nodes: tuple[fx.Node, ...]
    segment: Optional[Segment] = None


@dataclass
class PartitionPlan:
    blocks: list[Block]
    decisions: dict[fx.Node, NodeDecision] = field(default_factory=dict)

    @property
    def segments(self) -> list[Segment]:
        return [b.segment for b in self.blocks if b.segment is not None]

    @property
    def fallback_nodes(self) -> list[fx.Node]:
        return [n for b in self.blocks if b.kind is BlockKind.FALLBACK for n in b.nodes]

    @property
    def is_fully_converted(self) -> bool:
        return len(self.segments) == 1 and not self.fallback_nodes

    def summary(self) -> str:
        engine_nodes = sum(len(s) for s in self.segments)
        lines = [
            f"{len(self.segments)} segment(s) covering {engine_nodes} node(s), "
            f"{len(self.fallback_nodes)} node(s) run in torch"
        ]
        for n in self.fallback_nodes:
            d = self.decisions.get(n)
            if d is not None:
                lines.append(f"  {n.name} ({d.kind}): {d.reason}")
        return "\n".join(lines)


def _excluded_module(node: fx.Node, modules: dict[str, torch.nn.Module], config: CompileConfig) -> Optional[str]:
    if node.op == "call_module" and node.target in modules:
        if config.is_module_excluded(node.target, qualified_type_name(modules[node.target])):
            return str(node.target)
    for path, type_name in module_stack(node):
        if config.is_module_excluded(path, type_name):
            return path
    return None


def classify_node(
    node: fx.Node, modules: dict[str, torch.nn.Module], registry: ConverterRegistry, config: CompileConfig
) -> NodeDecision:
    kind = node_kind(node, modules)
    if config.is_op_excluded(kind):
        return NodeDecision(node, kind, False, "excluded op kind")
    path = _excluded_module(node, modules, config)
    if path is not None:
        return NodeDecision(node, kind, False, f"inside excluded module {path!r}")
    reason = registry.unsupported_reason(node, kind)
    if reason is not None:
        return NodeDecision(node, kind, False, reason)
    return NodeDecision(node, kind, True)


def classify_nodes(
    gm: fx.GraphModule, registry: Optional[ConverterRegistry] = None, config: Optional[CompileConfig] = None
) -> dict[fx.Node, NodeDecision]:
    registry = registry or DEFAULT_REGISTRY
    config = config or CompileConfig()
    modules = dict(gm.named_modules())
    return {n: classify_node(n, modules, registry, config) for n in gm.graph.nodes if n.op in COMPUTE_OPS}


def _group(compute: list[fx.Node], eligible: set[fx.Node]) -> list[tuple[list[fx.Node], bool]]:
    groups: list[tuple[list[fx.Node], bool]] = []
    for node in compute:
        flag = node in eligible
        if groups and groups[-1][1] == flag:
            groups[-1][0].append(node)
        else:
            groups.append(([node], flag))
    return groups


def _runs(compute: list[fx.Node], eligible: set[fx.Node]) -> list[list[fx.Node]]:
    return [nodes for nodes, is_engine in _group(compute, eligible) if is_engine]


def _is_constant(node: fx.Node, mutated: frozenset[str]) -> bool:
    # Attributes written at run time are read as segment inputs.
    return node.op == "get_attr" and node.target not in mutated


def _boundary_violations(
    run: list[fx.Node], members: set[fx.Node], mutated: frozenset[str]
) -> dict[fx.Node, str]:
    bad: dict[fx.Node, str] = {}
    for node in run:
        for inp in node.all_input_nodes:
            if inp not in members and not _is_constant(inp, mutated) and tensor_meta(inp) is None:
                bad[node] = f"consumes non-tensor value {inp.name}"
                break
        if node not in bad and any(u not in members for u in node.users) and tensor_meta(node) is None:
            bad[node] = "exports a non-tensor value"
    return bad


def _outputs(run: list[fx.Node], members: set[fx.Node]) -> list[fx.Node]:
    return [n for n in run if any(u not in members for u in n.users)]


def _inputs(run: list[fx.Node], members: set[fx.Node], mutated: frozenset[str]) -> list[fx.Node]:
    seen: dict[fx.Node, None] = {}
    for node in run:
        for inp in node.all_input_nodes:
            if inp not in members and not _is_constant(inp, mutated):
                seen.setdefault(inp, None)
    return list(seen)


def partition_graph(
    gm: fx.GraphModule,
    registry: Optional[ConverterRegistry] = None,
    config: Optional[CompileConfig] = None,
) -> PartitionPlan:
    """Partition the compute nodes of ``gm`` into engine segments and fallback blocks.

    Requires shape propagation to have run: support decisions read ``tensor_meta``.
    """

    registry = registry or DEFAULT_REGISTRY
    config = config or CompileConfig()
    decisions = classify_nodes(gm, registry, config)
    compute = list(decisions)
    mutated = mutated_attributes(gm)

    eligible = {n for n, d in decisions.items() if d.eligible}
    while True:
        changed = False
        for run in _runs(compute, eligible):
            members = set(run)
            bad = _boundary_violations(run, members, mutated)
            if bad:
                demoted = bad
            elif not _outputs(run, members):
                demoted = dict.fromkeys(run, "segment has no live outputs")
            elif len(run) < config.min_block_size:
                demoted = dict.fromkeys(run, f"segment shorter than min_block_size={config.min_block_size}")
            else:
                continue
            for node, reason in demoted.items():
                eligible.discard(node)
                decisions[node] = NodeDecision(node, decisions[node].kind, False, reason)
            changed = True
        if not changed:
            break

    if config.require_full_compilation:
        rejected = [d for d in decisions.values() if not d.eligible]
        if rejected:
            details = "\n".join(f"  {d.node.name} ({d.kind}): {d.reason}" for d in rejected)
            raise UnsupportedOperationError(
                f"Full compilation was requested but {len(rejected)} operation(s) cannot be converted:\n{details}"
            )

    # Assign a block id to each node: a new block starts whenever eligibility flips.
    blocks: list[Block] = []
    for run_nodes, is_engine in _group(compute, eligible):
        if is_engine:
            members = set(run_nodes)
            segment = Segment(
                name=f"segment_{sum(b.segment is not None for b in blocks)}",
                nodes=tuple(run_nodes),
                kinds=tuple(decisions[n].kind for n in run_nodes),
                inputs=tuple(_inputs(run_nodes, members, mutated)),
                outputs=tuple(_outputs(run_nodes, members)),
            )
            blocks.append(Block(BlockKind.ENGINE, segment.nodes, segment))
        else:
            blocks.append(Block(BlockKind.FALLBACK, tuple(run_nodes)))
    return PartitionPlan(blocks, decisions)


def validate_plan(plan: PartitionPlan, gm: fx.GraphModule) -> None:
    """Raise ``PartitionError`` unless the plan covers every compute node once, in fx order."""

    position = {n: i for i, n in enumerate(gm.graph.nodes)}
    compute = [n for n in gm.graph.nodes if n.op in COMPUTE_OPS]
    covered = [n for b in plan.blocks for n in b.nodes]
    if covered != compute:
        missing = set(compute) - set(covered)
        if missing:
            raise PartitionError(f"Plan does not cover {sorted(n.name for n in missing)}")
        raise PartitionError("Plan reorders or duplicates compute nodes")

    for block in plan.blocks:
        if not block.nodes:
            raise PartitionError(f"Empty {block.kind.value} block")
        segment = block.segment
        if (block.kind is BlockKind.ENGINE) != (segment is not None):
            raise PartitionError("Engine blocks and segments must correspond one to one")
        if segment is None:
            continue
        members = set(segment.nodes)
        first = position[segment.nodes[0]]
        for inp in segment.inputs:
            if position[inp] >= first:
                raise PartitionError(f"{segment.name}: input {inp.name} is not defined before the segment")
        for node in segment.nodes:
            if any(u not in members for u in node.users) and node not in segment.outputs:
                raise PartitionError(f"{segment.name}: {node.name} is used outside the segment but not exported")
