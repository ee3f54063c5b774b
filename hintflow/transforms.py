# hintflow/transforms.py
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import jax
import jax.numpy as jnp
import jax.scipy.linalg as jsp

from .errors import ShapeError
from .nets import ResidualBlock, Array


def _batch_size(x: Array) -> int:
    return x.shape[-1]


def _logdet_cotangent(dlogdet: Optional[Array], log_det: Array) -> Array:
    """Broadcast an optional log-det cotangent to the shape of `log_det`."""
    if dlogdet is None:
        return jnp.zeros_like(log_det)
    return jnp.broadcast_to(jnp.asarray(dlogdet, dtype=log_det.dtype), log_det.shape)


def _pullback(
    fn: Callable,
    primals: Tuple[Any, ...],
    cotangents: Tuple[Array, ...],
    dlogdet: Optional[Array],
):
    """
    Evaluate `fn` at `primals` and pull cotangents back to every primal.

    `fn` returns its tensor outputs followed by a per-sample log_det;
    `cotangents` covers the tensor outputs and `dlogdet` the log_det.
    """
    outputs, vjp_fn = jax.vjp(fn, *primals)
    return vjp_fn(tuple(cotangents) + (_logdet_cotangent(dlogdet, outputs[-1]),))


# ===================================================================
# 1x1 channel mixing with LU-style parameterization
# ===================================================================
@dataclass
class ChannelLinear:
    """
    Invertible 1x1 channel mixing with LU-style parameterization.

    The same matrix W ∈ R^{dim×dim} is applied to the channel vector at every
    spatial position and batch entry of an array shaped
    (spatial..., dim, batch):

      L = tril(lower_raw, k = -1) + I        (unit-diagonal lower)
      U = triu(upper_raw, k = 1)             (zero diagonal upper)
      s = exp(log_diag)                      (positive diagonal entries)
      T = U + diag(s)                        (upper-triangular)
      W = L @ T

    Forward: y = W x (applied as T then L). Inverse uses two triangular
    solves. Per sample,

      log |det ∂y/∂x| = n_positions * sum(log_diag),

    where n_positions is the number of spatial positions.

    Parameters:
      params["lower"]:    unconstrained raw lower-tri part, shape (dim, dim)
      params["upper"]:    unconstrained raw upper-tri part, shape (dim, dim)
      params["log_diag"]: diagonal log-scales, shape (dim,)
    """
    dim: int

    def _reconstruct_L_U_s(self, params: Any) -> Tuple[Array, Array, Array]:
        try:
            lower_raw = jnp.asarray(params["lower"])
            upper_raw = jnp.asarray(params["upper"])
            log_diag = jnp.asarray(params["log_diag"])
        except Exception as e:
            raise KeyError(
                "ChannelLinear: params must contain 'lower', 'upper', 'log_diag'"
            ) from e

        if lower_raw.shape != (self.dim, self.dim):
            raise ValueError(
                f"ChannelLinear: lower must have shape ({self.dim}, {self.dim}), "
                f"got {lower_raw.shape}"
            )
        if upper_raw.shape != (self.dim, self.dim):
            raise ValueError(
                f"ChannelLinear: upper must have shape ({self.dim}, {self.dim}), "
                f"got {upper_raw.shape}"
            )
        if log_diag.shape != (self.dim,):
            raise ValueError(
                f"ChannelLinear: log_diag must have shape ({self.dim},), "
                f"got {log_diag.shape}"
            )

        L = jnp.tril(lower_raw, k=-1) + jnp.eye(self.dim, dtype=lower_raw.dtype)
        U = jnp.triu(upper_raw, k=1)
        s = jnp.exp(log_diag)
        return L, U, s

    def _check_input(self, x: Array) -> None:
        if x.ndim < 2 or x.shape[-2] != self.dim:
            raise ShapeError(
                f"ChannelLinear: expected input channel dim {self.dim}, "
                f"got shape {x.shape}"
            )

    def _log_det(self, log_diag_sum: Array, x: Array) -> Array:
        n_positions = math.prod(x.shape[:-2])
        return jnp.broadcast_to(log_diag_sum * n_positions, (_batch_size(x),))

    def forward(self, params: Any, x: Array) -> Tuple[Array, Array]:
        """
        Forward map: x -> y, returning (y, log_det_forward).

        Arguments:
          params: PyTree with leaves 'lower', 'upper', 'log_diag'.
          x: input tensor of shape (spatial..., dim, batch).

        Returns:
          y: mixed tensor, same shape as x.
          log_det: log |det ∂y/∂x| per sample, shape (batch,).
        """
        self._check_input(x)
        L, U, s = self._reconstruct_L_U_s(params)
        T = U + jnp.diag(s)

        a = jnp.einsum("ij,...jb->...ib", T, x)
        y = jnp.einsum("ij,...jb->...ib", L, a)

        return y, self._log_det(jnp.sum(jnp.log(s)), x)

    def inverse(self, params: Any, y: Array) -> Tuple[Array, Array]:
        """
        Inverse map: y -> x, returning (x, log_det_inverse).

        log_det_inverse = -log_det_forward.
        """
        self._check_input(y)
        L, U, s = self._reconstruct_L_U_s(params)
        T = U + jnp.diag(s)

        # Channels to the front, everything else flattened into columns.
        moved = jnp.moveaxis(y, -2, 0)
        u_prime = moved.reshape((self.dim, -1))

        # 1) L a = u'   -> a
        # 2) T u = a    -> u
        a = jsp.solve_triangular(L, u_prime, lower=True, unit_diagonal=True)
        u = jsp.solve_triangular(T, a, lower=False)

        x = jnp.moveaxis(u.reshape(moved.shape), 0, -2)
        return x, self._log_det(-jnp.sum(jnp.log(s)), y)

    def backward(
        self, params: Any, dy: Array, y: Array, dlogdet: Optional[Array] = None
    ) -> Tuple[Array, Array, Any]:
        """
        Gradient of the forward map, recomputing its input from `y`.

        Returns:
          dx: gradient w.r.t. the input x.
          x: the recovered input.
          dparams: gradient w.r.t. params.
        """
        x, _ = self.inverse(params, y)
        dparams, dx = _pullback(self.forward, (params, x), (dy,), dlogdet)
        return dx, x, dparams

    def backward_inv(
        self, params: Any, dx: Array, x: Array, dlogdet: Optional[Array] = None
    ) -> Tuple[Array, Array, Any]:
        """Gradient of the inverse map, recomputing its input y from `x`."""
        y, _ = self.forward(params, x)
        dparams, dy = _pullback(self.inverse, (params, y), (dx,), dlogdet)
        return dy, y, dparams


# ===================================================================
# Fixed channel permutation
# ===================================================================
@dataclass
class ChannelPermutation:
    """
    Fixed permutation of the channel axis.

    Forward transform y = T(x):
    y[..., i, :] = x[..., perm[i], :]
    Inverse transform x = T⁻¹(y):
    x[..., perm[i], :] = y[..., i, :]

    The Jacobian is a permutation matrix, so log_det is always zero. An
    inverse permutation is precomputed at construction.
    """
    perm: Array  # integer indices, shape (dim,)

    def __post_init__(self):
        self.perm = jnp.asarray(self.perm)
        if self.perm.ndim != 1:
            raise ValueError(
                f"ChannelPermutation perm must be 1D, got shape {self.perm.shape}."
            )
        if not jnp.issubdtype(self.perm.dtype, jnp.integer):
            raise TypeError(
                f"ChannelPermutation perm must be integer dtype, got {self.perm.dtype}."
            )

        dim = self.perm.shape[0]
        inv_perm = jnp.empty_like(self.perm)
        inv_perm = inv_perm.at[self.perm].set(jnp.arange(dim))
        self._inv_perm = inv_perm

    @property
    def dim(self) -> int:
        return int(self.perm.shape[0])

    def _check_input(self, x: Array) -> None:
        if x.ndim < 2 or x.shape[-2] != self.dim:
            raise ShapeError(
                f"ChannelPermutation expected input with channel dimension {self.dim}, "
                f"got shape {x.shape}."
            )

    def forward(self, params: Any, x: Array) -> Tuple[Array, Array]:
        """Forward permutation: x -> y. params are ignored."""
        self._check_input(x)
        y = x[..., self.perm, :]
        return y, jnp.zeros((_batch_size(x),), dtype=x.dtype)

    def inverse(self, params: Any, y: Array) -> Tuple[Array, Array]:
        """Inverse permutation: y -> x. params are ignored."""
        self._check_input(y)
        x = y[..., self._inv_perm, :]
        return x, jnp.zeros((_batch_size(y),), dtype=y.dtype)

    def backward(
        self, params: Any, dy: Array, y: Array, dlogdet: Optional[Array] = None
    ) -> Tuple[Array, Array, Any]:
        # A permutation's adjoint is its inverse.
        dx, _ = self.inverse(params, dy)
        x, _ = self.inverse(params, y)
        return dx, x, jax.tree_util.tree_map(jnp.zeros_like, params)

    def backward_inv(
        self, params: Any, dx: Array, x: Array, dlogdet: Optional[Array] = None
    ) -> Tuple[Array, Array, Any]:
        dy, _ = self.forward(params, dx)
        y, _ = self.forward(params, x)
        return dy, y, jax.tree_util.tree_map(jnp.zeros_like, params)


# ===================================================================
# Affine coupling block on channel halves
# ===================================================================
@dataclass
class AffineCouplingBlock:
    """
    Affine coupling on a pair of channel halves (xa, xb).

    The first half passes through unchanged and conditions an elementwise
    affine map of the second half:

      (shift, log_scale_raw) = conditioner(xa)
      log_scale = tanh(log_scale_raw / max_log_scale) * max_log_scale
      ya = xa
      yb = xb * exp(log_scale) + shift

    Inverse:

      xb = (yb - shift) * exp(-log_scale)

    log_det = log |det ∂yb/∂xb| = sum(log_scale) over all non-batch axes,
    shape (batch,). The inverse returns its negative.

    Backward never reads cached activations: the block's inputs are
    recomputed from its outputs with the closed-form inverse, and cotangents
    are pulled back through `forward` with jax.vjp.

    Parameters:
      params["conditioner"]: Flax parameters of the ResidualBlock.

    With a zero-initialized conditioner output layer the block is exactly
    the identity map at initialization.

    References:
      - Dinh, Sohl-Dickstein, Bengio (2017). "Density estimation using Real NVP"
      - Kruse et al. (2021). "HINT: Hierarchical Invertible Neural Transport
        for Density Estimation and Bayesian Inference"
    """
    n_channels: int                # channels in each half
    conditioner: ResidualBlock     # Flax module (definition, no params inside)
    max_log_scale: float = 1.0

    def __post_init__(self):
        if self.n_channels <= 0:
            raise ValueError(
                f"AffineCouplingBlock: n_channels must be positive, got {self.n_channels}."
            )
        if self.conditioner.out_channels != 2 * self.n_channels:
            raise ValueError(
                "AffineCouplingBlock: conditioner must output 2 * n_channels = "
                f"{2 * self.n_channels} channels, got {self.conditioner.out_channels}."
            )

    def _check_halves(self, a: Array, b: Array) -> None:
        if a.shape != b.shape:
            raise ShapeError(
                f"AffineCouplingBlock: halves must have equal shapes, "
                f"got {a.shape} and {b.shape}."
            )
        if a.ndim < 2 or a.shape[-2] != self.n_channels:
            raise ShapeError(
                f"AffineCouplingBlock expected {self.n_channels} channels per half, "
                f"got shape {a.shape}."
            )

    def _condition(self, params: Any, a: Array) -> Tuple[Array, Array]:
        if "conditioner" not in params:
            raise KeyError(
                "AffineCouplingBlock expected params to contain key 'conditioner'."
            )

        out = self.conditioner.apply({"params": params["conditioner"]}, a)
        shift, log_scale_raw = jnp.split(out, 2, axis=-2)

        # Bound log_scale to avoid numerical explosions.
        log_scale = jnp.tanh(log_scale_raw / self.max_log_scale) * self.max_log_scale
        return shift, log_scale

    @staticmethod
    def _sum_per_sample(log_scale: Array) -> Array:
        return jnp.sum(log_scale, axis=tuple(range(log_scale.ndim - 1)))

    def forward(self, params: Any, xa: Array, xb: Array) -> Tuple[Array, Array, Array]:
        """
        Forward transform: (xa, xb) -> (ya, yb, log_det) with ya = xa.

        Arguments:
          params: dict with key "conditioner".
          xa, xb: halves of shape (spatial..., n_channels, batch).
        """
        self._check_halves(xa, xb)
        shift, log_scale = self._condition(params, xa)
        yb = xb * jnp.exp(log_scale) + shift
        return xa, yb, self._sum_per_sample(log_scale)

    def inverse(self, params: Any, ya: Array, yb: Array) -> Tuple[Array, Array, Array]:
        """Inverse transform: (ya, yb) -> (xa, xb, log_det) with xa = ya."""
        self._check_halves(ya, yb)
        shift, log_scale = self._condition(params, ya)
        xb = (yb - shift) * jnp.exp(-log_scale)
        return ya, xb, -self._sum_per_sample(log_scale)

    def backward(
        self,
        params: Any,
        dya: Array,
        dyb: Array,
        ya: Array,
        yb: Array,
        dlogdet: Optional[Array] = None,
    ) -> Tuple[Array, Array, Array, Array, Any]:
        """
        Backpropagate through `forward`.

        Arguments:
          dya, dyb: gradients w.r.t. the outputs ya, yb.
          ya, yb: the block's outputs.
          dlogdet: optional gradient w.r.t. the returned log_det.

        Returns:
          (dxa, dxb, xa, xb, dparams)
        """
        xa, xb, _ = self.inverse(params, ya, yb)
        dparams, dxa, dxb = _pullback(self.forward, (params, xa, xb), (dya, dyb), dlogdet)
        return dxa, dxb, xa, xb, dparams

    def backward_inv(
        self,
        params: Any,
        dxa: Array,
        dxb: Array,
        xa: Array,
        xb: Array,
        dlogdet: Optional[Array] = None,
    ) -> Tuple[Array, Array, Array, Array, Any]:
        """
        Backpropagate through `inverse`, recomputing (ya, yb) from (xa, xb).

        Returns:
          (dya, dyb, ya, yb, dparams)
        """
        ya, yb, _ = self.forward(params, xa, xb)
        dparams, dya, dyb = _pullback(self.inverse, (params, ya, yb), (dxa, dxb), dlogdet)
        return dya, dyb, ya, yb, dparams
