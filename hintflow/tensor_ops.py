# hintflow/tensor_ops.py
"""
Channel-axis split and concatenation.

Arrays are laid out as (spatial..., channel, batch), so the channel axis is
always the second-to-last axis. `tensor_cat(*tensor_split(x)) == x` exactly.
"""
from __future__ import annotations

from typing import Optional, Tuple

import jax.numpy as jnp

from .errors import ShapeError

Array = jnp.ndarray

CHANNEL_AXIS = -2


def _channel_axis(x: Array) -> int:
    if x.ndim < 2:
        raise ShapeError(
            f"expected an array with channel and batch axes, got shape {x.shape}."
        )
    return x.ndim + CHANNEL_AXIS


def tensor_split(x: Array, split_index: Optional[int] = None) -> Tuple[Array, Array]:
    """
    Split x along the channel axis into (left, right).

    Arguments:
      x: array of shape (spatial..., n_channel, batch).
      split_index: number of channels in `left`. Defaults to half of the
        channel count, which must then be even.

    Returns:
      left:  (spatial..., split_index, batch)
      right: (spatial..., n_channel - split_index, batch)
    """
    axis = _channel_axis(x)
    n_channel = x.shape[axis]

    if split_index is None:
        if n_channel % 2 != 0:
            raise ShapeError(
                f"tensor_split: cannot halve an odd channel count {n_channel}."
            )
        k = n_channel // 2
    else:
        k = int(split_index)
        if not 0 <= k <= n_channel:
            raise ShapeError(
                f"tensor_split: split_index must lie in [0, {n_channel}], got {k}."
            )

    left = x[..., :k, :]
    right = x[..., k:, :]
    return left, right


def tensor_cat(a: Array, b: Array) -> Array:
    """
    Concatenate two arrays along the channel axis. Inverse of `tensor_split`.

    An operand with zero channels is the identity element: the other operand
    is returned unchanged.
    """
    axis_a = _channel_axis(a)
    axis_b = _channel_axis(b)
    if a.ndim != b.ndim:
        raise ShapeError(
            f"tensor_cat: rank mismatch, got shapes {a.shape} and {b.shape}."
        )

    if a.shape[axis_a] == 0:
        return b
    if b.shape[axis_b] == 0:
        return a

    other_a = a.shape[:axis_a] + a.shape[axis_a + 1:]
    other_b = b.shape[:axis_b] + b.shape[axis_b + 1:]
    if other_a != other_b:
        raise ShapeError(
            f"tensor_cat: non-channel axes differ, got shapes {a.shape} and {b.shape}."
        )
    return jnp.concatenate([a, b], axis=axis_a)
