# hintflow/hint.py
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from .errors import ConfigurationError, ShapeError
from .layers import InvertibleLayer
from .tensor_ops import tensor_cat, tensor_split

Array = jnp.ndarray

# Nodes with at most this many channels are leaves of the recursion.
LEAF_CHANNELS = 4


class PermuteType(str, enum.Enum):
    """Where the channel-mixing operator is applied in a HINT layer."""
    NONE = "none"
    LOWER = "lower"   # on the lower half, after the root split
    BOTH = "both"     # on the full input, undone on the full output
    FULL = "full"     # on the full input only

    @classmethod
    def parse(cls, value: Any) -> "PermuteType":
        try:
            return cls(value)
        except ValueError as e:
            raise ConfigurationError(
                f"permute must be one of {[p.value for p in cls]}, got {value!r}."
            ) from e


def get_depth(n_in: int) -> int:
    """Number of recursion levels (and coupling blocks) for `n_in` channels."""
    count = 0
    nc = n_in
    while nc > LEAF_CHANNELS:
        nc /= 2
        count += 1
    return count + 1


def check_channel_count(n_in: int) -> int:
    """
    Validate that `n_in` channels can be halved cleanly down to the leaves.

    Every level splits its channels in half and the block at depth j acts on
    n_in / 2**j channels, so n_in must be divisible by 2**depth.

    Returns the recursion depth.
    """
    if not isinstance(n_in, (int, jnp.integer)) or n_in < 2:
        raise ConfigurationError(
            f"HINT needs an integer channel count >= 2, got {n_in!r}."
        )
    depth = get_depth(n_in)
    if n_in % (2 ** depth) != 0:
        raise ConfigurationError(
            f"HINT channel count {n_in} cannot be halved {depth} times; "
            f"use a power of two."
        )
    return depth


def _is_leaf(x: Array) -> bool:
    return x.shape[-2] <= LEAF_CHANNELS


def _add(tree_a: Any, tree_b: Any) -> Any:
    return jax.tree_util.tree_map(jnp.add, tree_a, tree_b)


@dataclass
class HINTLayer(InvertibleLayer):
    """
    Recursive HINT coupling layer (Kruse et al.).

    The channel axis is split in half; each half is transformed recursively
    by the next depth, and the coupling block of the current depth then maps
    the transformed lower half conditioned on the *untransformed* upper half:

      Ya        = HINT_{j+1}(Xa)
      Y_temp    = HINT_{j+1}(Xb)
      (_, Yb)   = CL_j(Xa, Y_temp)
      Y         = cat(Ya, Yb)

    Nodes with <= 4 channels are leaves: (Ya, Yb) = CL_j(Xa, Xb).

    Each depth owns one coupling block, so `couplings[j - 1]` serves every
    node at depth j and its parameters receive the summed gradient of all of
    them. log-dets of all block evaluations (and the optional channel
    mixing) add up to the log-det of the whole layer.

    Parameters (PyTree):
      params["couplings"]:   list of per-depth coupling params, root first
      params["permutation"]: params of the channel-mixing operator, or {}

    Usage:
      forward:  Y = layer.forward(params, X)  (or (Y, logdet) if layer.logdet)
      inverse:  X = layer.inverse(params, Y)
      backward: dX, X, grads = layer.backward(params, dY, Y)
    """
    n_in: int
    couplings: Sequence[Any]
    permutation: Any = None
    logdet: bool = False
    permute: Any = PermuteType.NONE
    spatial_dims: int = 2

    def __post_init__(self):
        self.permute = PermuteType.parse(self.permute)
        self.couplings = tuple(self.couplings)

        if self.spatial_dims not in (2, 3):
            raise ConfigurationError(
                f"HINT supports 2 or 3 spatial dimensions, got {self.spatial_dims}."
            )

        depth = check_channel_count(self.n_in)
        if len(self.couplings) != depth:
            raise ConfigurationError(
                f"HINT with {self.n_in} channels needs {depth} coupling blocks, "
                f"got {len(self.couplings)}."
            )
        for j, block in enumerate(self.couplings, start=1):
            expected = self.n_in // 2 ** j
            if getattr(block, "n_channels", expected) != expected:
                raise ConfigurationError(
                    f"coupling block at depth {j} must act on {expected} channels, "
                    f"got {block.n_channels}."
                )

        if self.permute is PermuteType.NONE:
            if self.permutation is not None:
                raise ConfigurationError(
                    "permutation operator given but permute='none'."
                )
        else:
            if self.permutation is None:
                raise ConfigurationError(
                    f"permute={self.permute.value!r} requires a permutation operator."
                )
            expected = self.n_in // 2 if self.permute is PermuteType.LOWER else self.n_in
            if getattr(self.permutation, "dim", expected) != expected:
                raise ConfigurationError(
                    f"permute={self.permute.value!r} needs a permutation over "
                    f"{expected} channels, got {self.permutation.dim}."
                )

    @property
    def depth(self) -> int:
        return len(self.couplings)

    # --------------------------------------------------------------
    # Helpers
    # --------------------------------------------------------------
    def _check_input(self, x: Array, name: str = "input") -> None:
        if x.ndim != self.spatial_dims + 2:
            raise ShapeError(
                f"HINT expected a {self.spatial_dims + 2}D {name} "
                f"(spatial..., channel, batch), got shape {x.shape}."
            )
        if x.shape[-2] != self.n_in:
            raise ShapeError(
                f"HINT expected {self.n_in} channels in {name}, got {x.shape[-2]}."
            )

    def _check_pair(self, dz: Array, z: Array) -> None:
        self._check_input(z)
        if dz.shape != z.shape:
            raise ShapeError(
                f"HINT gradient shape {dz.shape} does not match tensor shape {z.shape}."
            )

    def _permute_at(self, scale: int) -> PermuteType:
        # Channel mixing is sized for the root and only applied there.
        return self.permute if scale == 1 else PermuteType.NONE

    def _block(self, params: Any, scale: int) -> Tuple[Any, Any]:
        if not 1 <= scale <= self.depth:
            raise ConfigurationError(
                f"HINT recursion reached depth {scale}, but only {self.depth} "
                f"coupling blocks exist."
            )
        try:
            block_params = params["couplings"][scale - 1]
        except (KeyError, IndexError, TypeError) as e:
            raise KeyError(
                f"HINT expected params['couplings'] to hold {self.depth} entries."
            ) from e
        return self.couplings[scale - 1], block_params

    def _permutation_params(self, params: Any) -> Any:
        return params.get("permutation", {})

    def _zero_grads(self, params: Any) -> dict:
        return {
            "couplings": [
                jax.tree_util.tree_map(jnp.zeros_like, p) for p in params["couplings"]
            ],
            "permutation": jax.tree_util.tree_map(
                jnp.zeros_like, self._permutation_params(params)
            ),
        }

    # --------------------------------------------------------------
    # Forward
    # --------------------------------------------------------------
    def _forward(self, params: Any, x: Array, scale: int) -> Tuple[Array, Array]:
        block, block_params = self._block(params, scale)
        permute = self._permute_at(scale)
        perm_params = self._permutation_params(params)
        log_det = jnp.zeros((x.shape[-1],), dtype=x.dtype)

        if permute in (PermuteType.FULL, PermuteType.BOTH):
            x, ld = self.permutation.forward(perm_params, x)
            log_det = log_det + ld
        xa, xb = tensor_split(x)
        if permute is PermuteType.LOWER:
            xb, ld = self.permutation.forward(perm_params, xb)
            log_det = log_det + ld

        if _is_leaf(x):
            ya = xa
            _, yb, ld = block.forward(block_params, xa, xb)
        else:
            ya, ld_a = self._forward(params, xa, scale + 1)
            y_temp, ld_b = self._forward(params, xb, scale + 1)
            _, yb, ld = block.forward(block_params, xa, y_temp)
            log_det = log_det + ld_a + ld_b
        log_det = log_det + ld

        y = tensor_cat(ya, yb)
        if permute is PermuteType.BOTH:
            y, ld = self.permutation.inverse(perm_params, y)
            log_det = log_det + ld
        return y, log_det

    def forward(self, params: Any, x: Array, logdet: Optional[bool] = None):
        """
        Forward map X -> Y.

        Arguments:
          params: PyTree with keys "couplings" and "permutation".
          x: tensor of shape (spatial..., n_in, batch).
          logdet: override of the layer's `logdet` flag.

        Returns:
          y, or (y, log_det) with log_det of shape (batch,).
        """
        self._check_input(x)
        y, log_det = self._forward(params, x, 1)
        want_logdet = self.logdet if logdet is None else logdet
        return (y, log_det) if want_logdet else y

    # --------------------------------------------------------------
    # Inverse
    # --------------------------------------------------------------
    def _inverse(self, params: Any, y: Array, scale: int) -> Tuple[Array, Array]:
        block, block_params = self._block(params, scale)
        permute = self._permute_at(scale)
        perm_params = self._permutation_params(params)
        log_det = jnp.zeros((y.shape[-1],), dtype=y.dtype)

        if permute is PermuteType.BOTH:
            y, ld = self.permutation.forward(perm_params, y)
            log_det = log_det + ld
        ya, yb = tensor_split(y)

        if _is_leaf(y):
            xa = ya
            _, xb, ld = block.inverse(block_params, ya, yb)
            log_det = log_det + ld
        else:
            # Undo the upper half first: the block at this node was
            # conditioned on Xa, not on Ya.
            xa, ld_a = self._inverse(params, ya, scale + 1)
            _, y_temp, ld = block.inverse(block_params, xa, yb)
            xb, ld_b = self._inverse(params, y_temp, scale + 1)
            log_det = log_det + ld_a + ld + ld_b

        if permute is PermuteType.LOWER:
            xb, ld = self.permutation.inverse(perm_params, xb)
            log_det = log_det + ld
        x = tensor_cat(xa, xb)
        if permute in (PermuteType.FULL, PermuteType.BOTH):
            x, ld = self.permutation.inverse(perm_params, x)
            log_det = log_det + ld
        return x, log_det

    def inverse(self, params: Any, y: Array, logdet: bool = False):
        """
        Inverse map Y -> X.

        Returns x, or (x, log_det) with log_det = log |det ∂x/∂y| when
        logdet=True.
        """
        self._check_input(y)
        x, log_det = self._inverse(params, y, 1)
        return (x, log_det) if logdet else x

    # --------------------------------------------------------------
    # Backward (adjoint of forward)
    # --------------------------------------------------------------
    def _backward(
        self,
        params: Any,
        dy: Array,
        y: Array,
        scale: int,
        dlogdet: Optional[Array],
        grads: dict,
    ) -> Tuple[Array, Array]:
        block, block_params = self._block(params, scale)
        permute = self._permute_at(scale)
        perm_params = self._permutation_params(params)

        if permute is PermuteType.BOTH:
            dy, y, dp = self.permutation.backward_inv(perm_params, dy, y, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)
        ya, yb = tensor_split(y)
        dya, dyb = tensor_split(dy)

        if _is_leaf(y):
            xa = ya
            dxa = dya
            dxa_block, dxb, _, xb, dp = block.backward(
                block_params, jnp.zeros_like(dya), dyb, ya, yb, dlogdet
            )
        else:
            dxa, xa = self._backward(params, dya, ya, scale + 1, dlogdet, grads)
            dxa_block, dxb_temp, _, x_temp, dp = block.backward(
                block_params, jnp.zeros_like(dxa), dyb, xa, yb, dlogdet
            )
            dxb, xb = self._backward(params, dxb_temp, x_temp, scale + 1, dlogdet, grads)
        dxa = dxa + dxa_block
        grads["couplings"][scale - 1] = _add(grads["couplings"][scale - 1], dp)

        if permute is PermuteType.LOWER:
            dxb, xb, dp = self.permutation.backward(perm_params, dxb, xb, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)
        dx = tensor_cat(dxa, dxb)
        x = tensor_cat(xa, xb)
        if permute in (PermuteType.FULL, PermuteType.BOTH):
            dx, x, dp = self.permutation.backward(perm_params, dx, x, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)
        return dx, x

    def backward(self, params: Any, dy: Array, y: Array, dlogdet: Optional[Array] = None):
        """
        Backpropagate dY through the forward map, recomputing X from Y.

        Arguments:
          params: layer parameters.
          dy: gradient of the objective w.r.t. Y.
          y: output of `forward`.
          dlogdet: optional gradient of the objective w.r.t. the forward
            log_det, scalar or shape (batch,).

        Returns:
          dx: gradient w.r.t. X.
          x: the recomputed input.
          grads: gradient w.r.t. params, same structure as params.
        """
        self._check_pair(dy, y)
        grads = self._zero_grads(params)
        dx, x = self._backward(params, dy, y, 1, dlogdet, grads)
        return dx, x, grads

    # --------------------------------------------------------------
    # Backward through the inverse map
    # --------------------------------------------------------------
    def _backward_inv(
        self,
        params: Any,
        dx: Array,
        x: Array,
        scale: int,
        dlogdet: Optional[Array],
        grads: dict,
    ) -> Tuple[Array, Array]:
        block, block_params = self._block(params, scale)
        permute = self._permute_at(scale)
        perm_params = self._permutation_params(params)

        if permute in (PermuteType.FULL, PermuteType.BOTH):
            dx, x, dp = self.permutation.backward_inv(perm_params, dx, x, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)
        xa, xb = tensor_split(x)
        dxa, dxb = tensor_split(dx)
        if permute is PermuteType.LOWER:
            dxb, xb, dp = self.permutation.backward_inv(perm_params, dxb, xb, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)

        if _is_leaf(x):
            ya = xa
            dya = dxa
            dya_block, dyb, _, yb, dp = block.backward_inv(
                block_params, jnp.zeros_like(dxa), dxb, xa, xb, dlogdet
            )
            dya = dya + dya_block
        else:
            dy_temp, y_temp = self._backward_inv(params, dxb, xb, scale + 1, dlogdet, grads)
            dxa_block, dyb, _, yb, dp = block.backward_inv(
                block_params, jnp.zeros_like(dxa), dy_temp, xa, y_temp, dlogdet
            )
            dya, ya = self._backward_inv(params, dxa + dxa_block, xa, scale + 1, dlogdet, grads)
        grads["couplings"][scale - 1] = _add(grads["couplings"][scale - 1], dp)

        dy = tensor_cat(dya, dyb)
        y = tensor_cat(ya, yb)
        if permute is PermuteType.BOTH:
            dy, y, dp = self.permutation.backward(perm_params, dy, y, dlogdet)
            grads["permutation"] = _add(grads["permutation"], dp)
        return dy, y

    def backward_inv(self, params: Any, dx: Array, x: Array, dlogdet: Optional[Array] = None):
        """
        Backpropagate dX through the inverse map, recomputing Y from X.

        Returns (dy, y, grads); `dlogdet` is the gradient w.r.t. the inverse
        log_det.
        """
        self._check_pair(dx, x)
        grads = self._zero_grads(params)
        dy, y = self._backward_inv(params, dx, x, 1, dlogdet, grads)
        return dy, y, grads
