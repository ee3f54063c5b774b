# hintflow/layers.py
"""Common interface for invertible layers and the role-swapping reversed view."""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional

import jax.numpy as jnp

Array = jnp.ndarray


class InvertibleLayer(abc.ABC):
    """
    An invertible layer with explicit parameters.

      forward(params, x)           -> y, or (y, log_det) when log-dets are on
      inverse(params, y, logdet)   -> x, or (x, log_det) when logdet=True
      backward(params, dy, y)      -> (dx, x, grads)   adjoint of forward
      backward_inv(params, dx, x)  -> (dy, y, grads)   adjoint of inverse

    Backward methods take the layer *output* and recompute its input, so no
    activations need to be kept from the forward pass.
    """
    logdet: bool = False

    @property
    def is_inverse(self) -> bool:
        return False

    @abc.abstractmethod
    def forward(self, params: Any, x: Array, logdet: Optional[bool] = None):
        ...

    @abc.abstractmethod
    def inverse(self, params: Any, y: Array, logdet: bool = False):
        ...

    @abc.abstractmethod
    def backward(self, params: Any, dy: Array, y: Array, dlogdet: Optional[Array] = None):
        ...

    @abc.abstractmethod
    def backward_inv(self, params: Any, dx: Array, x: Array, dlogdet: Optional[Array] = None):
        ...

    def reverse(self) -> "InvertibleLayer":
        """View of this layer with forward and inverse swapped. Shares all blocks."""
        return ReversedLayer(layer=self)


@dataclass
class ReversedLayer(InvertibleLayer):
    """
    `layer` run backwards.

    forward/inverse and backward/backward_inv delegate to the wrapped layer
    with their roles swapped; the wrapped instance (and therefore its blocks
    and parameter layout) is shared, not copied.
    """
    layer: InvertibleLayer

    @property
    def logdet(self) -> bool:
        return self.layer.logdet

    @property
    def is_inverse(self) -> bool:
        return not self.layer.is_inverse

    def forward(self, params: Any, x: Array, logdet: Optional[bool] = None):
        return self.layer.inverse(
            params, x, logdet=self.layer.logdet if logdet is None else logdet
        )

    def inverse(self, params: Any, y: Array, logdet: bool = False):
        return self.layer.forward(params, y, logdet=logdet)

    def backward(self, params: Any, dy: Array, y: Array, dlogdet: Optional[Array] = None):
        return self.layer.backward_inv(params, dy, y, dlogdet=dlogdet)

    def backward_inv(self, params: Any, dx: Array, x: Array, dlogdet: Optional[Array] = None):
        return self.layer.backward(params, dx, x, dlogdet=dlogdet)

    def reverse(self) -> InvertibleLayer:
        return self.layer
