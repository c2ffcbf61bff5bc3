from __future__ import annotations

from typing import Any, Optional, Union

import torch
import torch.fx as fx

from ..config import CompileConfig
from ..errors import ConverterContractError, EngineBuildError
from ..ir import fetch_attr
from ..network import Network, NetworkTensor
from ..types import truncated_dtype

_WIDE_DTYPES = (torch.int64, torch.float64)


class ConversionContext:
    """State shared by the converters of one segment.

    ``value_map`` maps already converted fx nodes to the network tensors that
    hold their values. ``node`` is the node currently being converted and is
    recorded as the origin of every layer added through the context.
    """

    def __init__(self, network: Network, config: CompileConfig, gm: fx.GraphModule) -> None:
        self.network = network
        self.config = config
        self.gm = gm
        self.value_map: dict[fx.Node, NetworkTensor] = {}
        self.node: Optional[fx.Node] = None

    @property
    def origin(self) -> Optional[str]:
        return self.node.name if self.node is not None else None

    def get_tensor(self, arg: Any) -> NetworkTensor:
        if not isinstance(arg, fx.Node):
            raise ConverterContractError(f"{self.origin}: expected a tensor operand, got {arg!r}")
        t = self.value_map.get(arg)
        if t is not None:
            return t
        if arg.op == "get_attr":
            value = fetch_attr(self.gm, arg.target)
            if not isinstance(value, torch.Tensor):
                raise ConverterContractError(f"{arg.name} is not a tensor constant")
            t = self.constant(value, origin=arg.name)
            self.value_map[arg] = t
            return t
        raise ConverterContractError(f"{self.origin}: operand {arg.name} has not been converted")

    def constant(self, value: torch.Tensor, *, origin: Optional[str] = None) -> NetworkTensor:
        origin = origin or self.origin
        if value.dtype in _WIDE_DTYPES:
            if not self.config.truncate_long_and_double:
                raise EngineBuildError(
                    f"Constant of dtype {value.dtype} requires truncate_long_and_double", node=origin
                )
            value = value.to(truncated_dtype(value.dtype))
        return self.network.add_constant(value, origin=origin)

    def scalar(self, value: Union[int, float, bool], like: NetworkTensor) -> NetworkTensor:
        """A 0-dim constant with the dtype torch promotes ``like op value`` to."""

        dtype = torch.result_type(torch.empty((), dtype=like.dtype), value)
        return self.constant(torch.tensor(value, dtype=dtype))

    def operand(self, arg: Any, like: NetworkTensor) -> NetworkTensor:
        if isinstance(arg, fx.Node):
            return self.get_tensor(arg)
        return self.scalar(arg, like)

    def add_layer(self, kind: str, inputs: list[NetworkTensor], **attrs: Any) -> NetworkTensor:
        (out,) = self.network.add_layer(kind, inputs, origin=self.origin, **attrs)
        return out
