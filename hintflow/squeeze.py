"""
Invertible trades of spatial resolution for channels.

All functions act on arrays laid out as (spatial..., channel, batch) with a
spatial rank of 2 (images) or 3 (volumes). Each squeeze halves every spatial
axis and multiplies the channel count by 2**rank; the matching unsqueeze is
its exact inverse.

Block squeeze patterns (2-D, one input channel, 4x4 -> 2x2x4), labelled by
the output channel each pixel lands in, first spatial axis vertical (rows):

    1 2 3 4        1 1 3 3        1 3 1 3
    1 2 3 4        1 1 3 3        2 4 2 4
    1 2 3 4        2 2 4 4        1 3 1 3
    1 2 3 4        2 2 4 4        2 4 2 4

    column          patch       checkerboard

"column" is a column-major (Fortran-order) reshape and moves no data.
"patch" and "checkerboard" fill channel sub-range k with the spatial block
(resp. sublattice) whose parity vector is the k-th entry of
`_parity_offsets(rank)`, first spatial axis varying fastest.

The Haar squeeze is a one-level lifting wavelet transform. Each lifting step
along an axis splits it into even (H) and odd (L) samples and applies

    H <- H - L          (predict)
    L <- L + H / 2      (update)
    H <- H / sqrt(2)    (normalize)
    L <- L * sqrt(2)

which is orthonormal, so sum(x**2) is preserved.
"""
from __future__ import annotations

import itertools
import math
from typing import List, Tuple

import jax.numpy as jnp

from .errors import ShapeError, UnsupportedPatternError

Array = jnp.ndarray

PATTERNS = ("column", "patch", "checkerboard")

_SQRT2 = math.sqrt(2.0)


# ===================================================================
# Helpers
# ===================================================================
def _spatial_rank(x: Array) -> int:
    rank = x.ndim - 2
    if rank not in (2, 3):
        raise ShapeError(
            f"expected a 4D (nx, ny, c, b) or 5D (nx, ny, nz, c, b) array, "
            f"got shape {x.shape}."
        )
    return rank


def _parity_offsets(rank: int) -> List[Tuple[int, ...]]:
    # (0,0), (1,0), (0,1), (1,1) for rank 2; first axis varies fastest.
    return [tuple(reversed(p)) for p in itertools.product((0, 1), repeat=rank)]


def _reshape_fortran(x: Array, shape: Tuple[int, ...]) -> Array:
    return jnp.transpose(jnp.reshape(jnp.transpose(x), tuple(reversed(shape))))


def _check_pattern(pattern: str, rank: int) -> None:
    if pattern not in PATTERNS:
        raise UnsupportedPatternError(
            f"unknown squeeze pattern {pattern!r}; expected one of {PATTERNS}."
        )
    if pattern == "checkerboard" and rank == 3:
        raise UnsupportedPatternError(
            "checkerboard pattern is not defined for 3D (volume) inputs."
        )


def _block_index(offsets: Tuple[int, ...], sizes: Tuple[int, ...], pattern: str):
    if pattern == "patch":
        spatial = tuple(slice(o * n, (o + 1) * n) for o, n in zip(offsets, sizes))
    else:
        spatial = tuple(slice(o, None, 2) for o in offsets)
    return spatial + (slice(None), slice(None))


# ===================================================================
# Block squeeze / unsqueeze
# ===================================================================
def squeeze(x: Array, pattern: str = "column") -> Array:
    """
    Halve each spatial axis and multiply the channel count by 2**rank.

    Arguments:
      x: array of shape (nx, ny[, nz], c, b) with even spatial sizes.
      pattern: "column", "patch" or "checkerboard" (2-D only).

    Returns:
      array of shape (nx/2, ny/2[, nz/2], c * 2**rank, b).
    """
    rank = _spatial_rank(x)
    _check_pattern(pattern, rank)

    spatial = x.shape[:rank]
    n_channel, batch = x.shape[-2:]
    if any(n % 2 for n in spatial):
        raise ShapeError(
            f"squeeze: spatial dimensions must be multiples of 2, got {spatial}."
        )
    half = tuple(n // 2 for n in spatial)

    if pattern == "column":
        return _reshape_fortran(x, half + (n_channel * 2 ** rank, batch))

    blocks = [x[_block_index(o, half, pattern)] for o in _parity_offsets(rank)]
    return jnp.concatenate(blocks, axis=-2)


def unsqueeze(y: Array, pattern: str = "column") -> Array:
    """
    Undo `squeeze`: double each spatial axis and divide the channel count by 2**rank.

    Arguments:
      y: array of shape (nx, ny[, nz], c, b) with c divisible by 2**rank.
      pattern: the pattern used by the matching `squeeze`.

    Returns:
      array of shape (2*nx, 2*ny[, 2*nz], c / 2**rank, b).
    """
    rank = _spatial_rank(y)
    _check_pattern(pattern, rank)

    factor = 2 ** rank
    spatial = y.shape[:rank]
    n_channel, batch = y.shape[-2:]
    if n_channel % factor != 0:
        raise ShapeError(
            f"unsqueeze: channel count {n_channel} is not divisible by {factor}."
        )
    n_out = n_channel // factor
    double = tuple(2 * n for n in spatial)

    if pattern == "column":
        return _reshape_fortran(y, double + (n_out, batch))

    x = jnp.zeros(double + (n_out, batch), dtype=y.dtype)
    for k, offsets in enumerate(_parity_offsets(rank)):
        x = x.at[_block_index(offsets, spatial, pattern)].set(
            y[..., k * n_out:(k + 1) * n_out, :]
        )
    return x


# ===================================================================
# Haar lifting
# ===================================================================
def _every_other(x: Array, axis: int, start: int) -> Array:
    index = [slice(None)] * x.ndim
    index[axis] = slice(start, None, 2)
    return x[tuple(index)]


def haar_lift(x: Array, axis: int) -> Tuple[Array, Array]:
    """
    One Haar lifting step along a spatial axis.

    Returns (L, H): the normalized low-pass (odd samples updated) and
    high-pass (even samples predicted) halves, each with `axis` halved.
    """
    rank = _spatial_rank(x)
    if not 0 <= axis < rank:
        raise ShapeError(
            f"haar_lift: axis must be a spatial axis in [0, {rank}), got {axis}."
        )
    if x.shape[axis] % 2 != 0:
        raise ShapeError(
            f"haar_lift: axis {axis} has odd length {x.shape[axis]}."
        )

    high = _every_other(x, axis, 0)
    low = _every_other(x, axis, 1)

    high = high - low
    low = low + high / 2.0

    high = high / _SQRT2
    low = low * _SQRT2
    return low, high


def inv_haar_lift(low: Array, high: Array, axis: int) -> Array:
    """Exact inverse of `haar_lift`, re-interleaving the two halves along `axis`."""
    if low.shape != high.shape:
        raise ShapeError(
            f"inv_haar_lift: band shapes differ, got {low.shape} and {high.shape}."
        )
    rank = _spatial_rank(low)
    if not 0 <= axis < rank:
        raise ShapeError(
            f"inv_haar_lift: axis must be a spatial axis in [0, {rank}), got {axis}."
        )

    high = high * _SQRT2
    low = low / _SQRT2

    low = low - high / 2.0
    high = low + high

    # Even positions hold H, odd positions hold L.
    merged = jnp.stack([high, low], axis=axis + 1)
    shape = low.shape[:axis] + (2 * low.shape[axis],) + low.shape[axis + 1:]
    return merged.reshape(shape)


def haar_squeeze(x: Array) -> Array:
    """
    One-level channelwise Haar transform, squeezed into channels.

    2-D: (nx, ny, c, b) -> (nx/2, ny/2, 4c, b) with bands ordered a, v, h, d.
    3-D: (nx, ny, nz, c, b) -> (nx/2, ny/2, nz/2, 8c, b) with bands ordered
         ah, al, vh, vl, hh, hl, dh, dl.
    """
    rank = _spatial_rank(x)

    L, H = haar_lift(x, 1)
    a, h = haar_lift(L, 0)
    v, d = haar_lift(H, 0)

    if rank == 2:
        return jnp.concatenate([a, v, h, d], axis=-2)

    al, ah = haar_lift(a, 2)
    vl, vh = haar_lift(v, 2)
    hl, hh = haar_lift(h, 2)
    dl, dh = haar_lift(d, 2)
    return jnp.concatenate([ah, al, vh, vl, hh, hl, dh, dl], axis=-2)


def inv_haar_unsqueeze(y: Array) -> Array:
    """Inverse of `haar_squeeze`."""
    rank = _spatial_rank(y)
    n_bands = 2 ** rank
    n_channel = y.shape[-2]
    if n_channel % n_bands != 0:
        raise ShapeError(
            f"inv_haar_unsqueeze: channel count {n_channel} is not divisible by {n_bands}."
        )
    n = n_channel // n_bands
    bands = [y[..., k * n:(k + 1) * n, :] for k in range(n_bands)]

    if rank == 2:
        a, v, h, d = bands
    else:
        ah, al, vh, vl, hh, hl, dh, dl = bands
        a = inv_haar_lift(al, ah, 2)
        v = inv_haar_lift(vl, vh, 2)
        h = inv_haar_lift(hl, hh, 2)
        d = inv_haar_lift(dl, dh, 2)

    L = inv_haar_lift(a, h, 0)
    H = inv_haar_lift(v, d, 0)
    return inv_haar_lift(L, H, 1)
