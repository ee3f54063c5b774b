# hintflow/builders.py
from __future__ import annotations

import logging
from typing import Any, Sequence, Tuple

import jax
import jax.numpy as jnp

from .errors import ConfigurationError
from .hint import HINTLayer, PermuteType, check_channel_count
from .nets import init_residual_block, PRNGKey
from .transforms import AffineCouplingBlock, ChannelLinear, ChannelPermutation

logger = logging.getLogger(__name__)


def _init_channel_linear(key: PRNGKey, dim: int, scale: float = 0.1) -> dict:
    """Near-identity LU parameters: small random triangular parts, unit diagonal."""
    k1, k2 = jax.random.split(key)
    return {
        "lower": jax.random.normal(k1, (dim, dim), dtype=jnp.float32) * scale,
        "upper": jax.random.normal(k2, (dim, dim), dtype=jnp.float32) * scale,
        "log_diag": jnp.zeros((dim,), dtype=jnp.float32),
    }


# ====================================================================
# HINT builder
# ====================================================================
def build_hint(
    key: PRNGKey,
    spatial_shape: Sequence[int],
    n_in: int,
    n_hidden: int,
    batch_size: int = 1,
    *,
    logdet: bool = False,
    permute: str = "none",
    k1: int = 3,
    k2: int = 3,
    p1: int = 1,
    p2: int = 1,
    s1: int = 1,
    s2: int = 1,
    max_log_scale: float = 1.0,
    learnable_permutation: bool = True,
) -> Tuple[HINTLayer, Any]:
    """
    Construct a recursive HINT coupling layer and its parameters.

    Architecture:
      - get_depth(n_in) affine coupling blocks; the block at depth j acts on
        n_in / 2**j channels per half and is conditioned by a ResidualBlock
        mapping those channels to 2 * n_in / 2**j (shift and log-scale).
      - Optional 1x1 channel mixing, placed according to `permute`:
          * "none":  no mixing
          * "lower": mixing of the lower half (n_in / 2 channels) after the
                     root split
          * "full":  mixing of the whole input (n_in channels)
          * "both":  mixing of the whole input, undone on the output

    Parameters structure:
      params["couplings"]   -> list of {"conditioner": resblock_params}, root first
      params["permutation"] -> {"lower", "upper", "log_diag"} for ChannelLinear,
                               {} for ChannelPermutation or no mixing

    Arguments:
      key: JAX PRNGKey used to initialize all conditioners and the mixing.
      spatial_shape: (nx, ny) or (nx, ny, nz); its length sets the spatial rank.
      n_in: number of input channels (a power of two).
      n_hidden: hidden channels of every conditioner.
      batch_size: batch size of the dummy initialization inputs.
      logdet: whether forward returns (Y, log_det) by default.
      permute: one of "none", "lower", "both", "full".
      k1, k2, p1, p2, s1, s2: kernel sizes, paddings and strides of the
        conditioner convolutions, passed to every block unchanged.
      max_log_scale: bound on |log_scale| via tanh.
      learnable_permutation: if True, mixing is an LU-parameterized
        ChannelLinear; otherwise a fixed channel reversal.

    Returns:
      layer: HINTLayer (definition only, no parameters inside).
      params: PyTree of parameters for the layer.

    Every conditioner starts with a zeroed output layer, so the layer is the
    identity map up to the channel mixing at initialization.
    """
    spatial_shape = tuple(int(n) for n in spatial_shape)
    if len(spatial_shape) not in (2, 3):
        raise ConfigurationError(
            f"build_hint: spatial_shape must have 2 or 3 entries, got {spatial_shape}."
        )
    if n_hidden <= 0:
        raise ConfigurationError(
            f"build_hint: n_hidden must be positive, got {n_hidden}."
        )
    permute_type = PermuteType.parse(permute)
    depth = check_channel_count(n_in)

    key_perm, *block_keys = jax.random.split(key, depth + 1)

    couplings = []
    coupling_params = []
    for j, block_key in enumerate(block_keys, start=1):
        n_half = n_in // 2 ** j
        conditioner, conditioner_params = init_residual_block(
            block_key,
            spatial_shape,
            in_channels=n_half,
            hidden_channels=n_hidden,
            out_channels=2 * n_half,
            batch_size=batch_size,
            k1=k1, k2=k2, p1=p1, p2=p2, s1=s1, s2=s2,
        )
        couplings.append(
            AffineCouplingBlock(
                n_channels=n_half,
                conditioner=conditioner,
                max_log_scale=max_log_scale,
            )
        )
        coupling_params.append({"conditioner": conditioner_params})

    permutation = None
    permutation_params = {}
    if permute_type is not PermuteType.NONE:
        dim = n_in // 2 if permute_type is PermuteType.LOWER else n_in
        if learnable_permutation:
            permutation = ChannelLinear(dim=dim)
            permutation_params = _init_channel_linear(key_perm, dim)
        else:
            permutation = ChannelPermutation(perm=jnp.arange(dim - 1, -1, -1))

    layer = HINTLayer(
        n_in=n_in,
        couplings=couplings,
        permutation=permutation,
        logdet=logdet,
        permute=permute_type,
        spatial_dims=len(spatial_shape),
    )
    logger.debug(
        "Built HINT layer: n_in=%d depth=%d permute=%s block widths=%s spatial_shape=%s",
        n_in,
        depth,
        permute_type.value,
        [block.n_channels for block in couplings],
        spatial_shape,
    )

    params = {
        "couplings": coupling_params,
        "permutation": permutation_params,
    }
    return layer, params
