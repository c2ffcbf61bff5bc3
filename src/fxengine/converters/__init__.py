"""Converters from fx nodes to network layers.

Importing this package registers the built-in converters on
``DEFAULT_REGISTRY``. Additional converters register the same way::

    @DEFAULT_REGISTRY.register("my_op", supports=lambda node: ...)
    def convert_my_op(ctx, node):
        return ctx.add_layer(...)
"""

from ._context import ConversionContext
from ._registry import DEFAULT_REGISTRY, ConverterEntry, ConverterRegistry
from . import _activations, _elementwise, _linear, _reduce, _shape  # noqa: F401  (registration)

DEFAULT_REGISTRY.register_fallback("size", "dim", "numel", "getitem", "getattr", "assert", "random", "dropout")

__all__ = [
    "DEFAULT_REGISTRY",
    "ConversionContext",
    "ConverterEntry",
    "ConverterRegistry",
]
