# hintflow/nets.py
from __future__ import annotations

from typing import Callable, Sequence, Tuple

import jax
import jax.numpy as jnp
from flax import linen as nn

from .errors import ShapeError


Array = jnp.ndarray
PRNGKey = jax.Array  # type alias for JAX random keys


class ResidualBlock(nn.Module):
    """
    Convolutional conditioner used inside HINT coupling blocks.

    Three convolutions with ReLU in between:

      conv_in:  k1 kernel, s1 stride, p1 padding, in_channels -> hidden_channels
      conv_mid: k2 kernel, s2 stride, p2 padding, hidden_channels -> hidden_channels
      conv_out: transposed k1 kernel, s1 stride, p1 padding, hidden_channels -> out_channels

    Assumptions:
      - Inputs have shape (spatial..., in_channels, batch) with spatial rank
        `spatial_dims` (2 or 3).
      - The output has the same spatial shape as the input; strides and
        paddings that break this raise ShapeError.
    """
    spatial_dims: int
    in_channels: int
    hidden_channels: int
    out_channels: int
    k1: int = 3
    k2: int = 3
    p1: int = 1
    p2: int = 1
    s1: int = 1
    s2: int = 1
    activation: Callable[[Array], Array] = nn.relu

    @nn.compact
    def __call__(self, x: Array) -> Array:
        if x.ndim != self.spatial_dims + 2:
            raise ShapeError(
                f"ResidualBlock expected a {self.spatial_dims + 2}D input, "
                f"got shape {x.shape}."
            )
        if x.shape[-2] != self.in_channels:
            raise ShapeError(
                f"ResidualBlock expected {self.in_channels} channels, got {x.shape[-2]}."
            )

        rank = self.spatial_dims
        # flax convolutions want (batch, spatial..., channel).
        h = jnp.moveaxis(x, -1, 0)

        h = nn.Conv(
            features=self.hidden_channels,
            kernel_size=(self.k1,) * rank,
            strides=(self.s1,) * rank,
            padding=[(self.p1, self.p1)] * rank,
            name="conv_in",
        )(h)
        h = self.activation(h)
        h = nn.Conv(
            features=self.hidden_channels,
            kernel_size=(self.k2,) * rank,
            strides=(self.s2,) * rank,
            padding=[(self.p2, self.p2)] * rank,
            name="conv_mid",
        )(h)
        h = self.activation(h)
        h = nn.ConvTranspose(
            features=self.out_channels,
            kernel_size=(self.k1,) * rank,
            strides=(self.s1,) * rank,
            # lax-style padding equivalent to cropping p1 from the transposed output.
            padding=[(self.k1 - 1 - self.p1, self.k1 - 1 - self.p1)] * rank,
            name="conv_out",
        )(h)

        if h.shape[1:-1] != x.shape[:rank]:
            raise ShapeError(
                f"ResidualBlock output spatial shape {h.shape[1:-1]} does not match "
                f"input {x.shape[:rank]}; check kernel/stride/padding settings."
            )
        return jnp.moveaxis(h, 0, -1)


def init_residual_block(
    key: PRNGKey,
    spatial_shape: Sequence[int],
    in_channels: int,
    hidden_channels: int,
    out_channels: int,
    batch_size: int = 1,
    k1: int = 3,
    k2: int = 3,
    p1: int = 1,
    p2: int = 1,
    s1: int = 1,
    s2: int = 1,
) -> Tuple[ResidualBlock, dict]:
    """
    Construct a ResidualBlock and initialize its parameters.

    Arguments:
      key: JAX PRNGKey used for parameter initialization.
      spatial_shape: (nx, ny) or (nx, ny, nz) of the inputs the block will see.
      in_channels: channel count of the conditioning input.
      hidden_channels: width of the two hidden convolutions.
      out_channels: channel count of the output.
      batch_size: batch size of the dummy initialization input.
      k1, k2, p1, p2, s1, s2: kernel sizes, paddings and strides.

    Returns:
      block: the Flax module (definition only, no params inside).
      params: a PyTree of parameters for this block (suitable for block.apply).

    Notes:
      The final convolution ("conv_out") is zero-initialized, so the block
      outputs zeros at initialization and any coupling that reads its output
      as shift/log_scale starts exactly at the identity map.
    """
    spatial_shape = tuple(int(n) for n in spatial_shape)
    block = ResidualBlock(
        spatial_dims=len(spatial_shape),
        in_channels=in_channels,
        hidden_channels=hidden_channels,
        out_channels=out_channels,
        k1=k1, k2=k2, p1=p1, p2=p2, s1=s1, s2=s2,
    )
    dummy_x = jnp.zeros(spatial_shape + (in_channels, batch_size), dtype=jnp.float32)
    variables = block.init(key, dummy_x)

    params = dict(variables.get("params", {}))
    if "conv_out" not in params:
        raise KeyError(
            "init_residual_block expected a 'conv_out' parameter collection; "
            "check the ResidualBlock implementation if this error occurs."
        )

    conv_out = dict(params["conv_out"])
    conv_out["kernel"] = jnp.zeros_like(conv_out["kernel"])
    conv_out["bias"] = jnp.zeros_like(conv_out["bias"])
    params["conv_out"] = conv_out

    return block, params
