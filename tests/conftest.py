# tests/conftest.py
"""Shared pytest fixtures for hintflow tests."""
from __future__ import annotations

import pytest
import jax
import jax.numpy as jnp


@pytest.fixture
def key():
    """Default JAX PRNG key."""
    return jax.random.PRNGKey(42)


@pytest.fixture
def spatial_shape():
    """Default 2-D spatial shape (nx, ny)."""
    return (4, 4)


@pytest.fixture
def batch_size():
    """Default batch size."""
    return 2


def perturb_params(key, params, scale=0.1):
    """
    Add Gaussian noise to every leaf of a parameter PyTree.

    Builders zero the conditioner output layers, which makes every coupling
    the identity; tests that need a non-trivial map perturb the params first.
    """
    leaves, treedef = jax.tree_util.tree_flatten(params)
    keys = jax.random.split(key, max(len(leaves), 1))
    noisy = [
        leaf + scale * jax.random.normal(k, leaf.shape, dtype=leaf.dtype)
        for leaf, k in zip(leaves, keys)
    ]
    return jax.tree_util.tree_unflatten(treedef, noisy)


def tree_max_abs_diff(tree_a, tree_b):
    """Largest absolute elementwise difference between two PyTrees."""
    diffs = jax.tree_util.tree_map(lambda a, b: jnp.abs(a - b).max(), tree_a, tree_b)
    return max(float(d) for d in jax.tree_util.tree_leaves(diffs))


def check_invertibility(forward_fn, inverse_fn, x):
    """
    Helper to verify inverse(forward(x)) ≈ x and log_det consistency.

    Both functions return (output, log_det). Returns dict with errors.
    """
    y, ld_fwd = forward_fn(x)
    x_rec, ld_inv = inverse_fn(y)

    return {
        "reconstruction_error": float(jnp.abs(x - x_rec).max()),
        "logdet_error": float(jnp.abs(ld_fwd + ld_inv).max()),
        "y": y,
        "x_rec": x_rec,
    }
