from __future__ import annotations

from typing import Any, Union

import torch

from .network import CompiledEngine


class EngineModule(torch.nn.Module):
    """Run one compiled engine as a module inside a stitched FX graph.

    The module is installed where the engine's segment used to be, so its call
    signature is the segment's inputs and its result the segment's outputs: a
    single tensor, or a tuple the graph unpacks with ``getitem``.

    The serialized engine travels in the module's extra state, so a
    ``state_dict`` of the surrounding program carries its engines.
    """

    def __init__(self, engine: CompiledEngine, *, num_outputs: int = 1) -> None:
        super().__init__()
        self._engine = engine
        self._num_outputs = num_outputs

    @property
    def engine(self) -> CompiledEngine:
        return self._engine

    def forward(self, *inputs: torch.Tensor) -> Union[torch.Tensor, tuple[torch.Tensor, ...]]:
        outputs = self._engine.execute(inputs)
        if self._num_outputs == 1:
            return outputs[0]
        return tuple(outputs)

    def get_extra_state(self) -> Any:
        return {"engine": self._engine.serialize(), "num_outputs": self._num_outputs}

    def set_extra_state(self, state: Any) -> None:
        self._engine = CompiledEngine.deserialize(state["engine"], device=self._engine.device)
        self._num_outputs = state["num_outputs"]

    def extra_repr(self) -> str:
        return f"engine={self._engine.name!r}, layers={len(self._engine.layers)}, outputs={self._num_outputs}"
