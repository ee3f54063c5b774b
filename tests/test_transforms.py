# tests/test_transforms.py
"""Unit tests for channel mixing and coupling blocks."""
from __future__ import annotations

import pytest
import jax
import jax.numpy as jnp

from hintflow.errors import ShapeError
from hintflow.nets import init_residual_block
from hintflow.transforms import AffineCouplingBlock, ChannelLinear, ChannelPermutation

from conftest import check_invertibility, perturb_params, tree_max_abs_diff


@pytest.fixture
def dim():
    """Default channel dimension."""
    return 4


def _make_coupling(key, n_channels=2, spatial_shape=(4, 4), hidden=8, perturb=True):
    conditioner, conditioner_params = init_residual_block(
        key, spatial_shape, in_channels=n_channels, hidden_channels=hidden,
        out_channels=2 * n_channels,
    )
    block = AffineCouplingBlock(n_channels=n_channels, conditioner=conditioner)
    params = {"conditioner": conditioner_params}
    if perturb:
        params = perturb_params(jax.random.fold_in(key, 7), params)
    return block, params


# ============================================================================
# ChannelLinear Tests
# ============================================================================
class TestChannelLinear:
    """Tests for ChannelLinear (LU-parameterized 1x1 mixing)."""

    @pytest.fixture
    def identity_params(self, dim):
        """Identity transform params (L=I, U=0, s=1)."""
        return {
            "lower": jnp.zeros((dim, dim)),
            "upper": jnp.zeros((dim, dim)),
            "log_diag": jnp.zeros(dim),
        }

    @pytest.fixture
    def random_params(self, key, dim):
        """Random transform params."""
        k1, k2, k3 = jax.random.split(key, 3)
        return {
            "lower": jax.random.normal(k1, (dim, dim)) * 0.1,
            "upper": jax.random.normal(k2, (dim, dim)) * 0.1,
            "log_diag": jax.random.normal(k3, (dim,)) * 0.5,
        }

    def test_identity_at_init(self, key, dim, identity_params):
        """With zero params, transform is identity."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (3, 3, dim, 2))

        y, ld = transform.forward(identity_params, x)

        assert jnp.allclose(y, x, atol=1e-6)
        assert jnp.allclose(ld, 0.0, atol=1e-6)

    def test_forward_shape(self, key, dim, random_params):
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (4, 2, dim, 5))

        y, ld = transform.forward(random_params, x)

        assert y.shape == x.shape
        assert ld.shape == (5,)

    def test_mixes_channels_per_position(self, key, dim, random_params):
        """Forward equals W @ x[i, j, :, b] at every position."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (3, 2, dim, 2))
        L, U, s = transform._reconstruct_L_U_s(random_params)
        W = L @ (U + jnp.diag(s))

        y, _ = transform.forward(random_params, x)

        assert jnp.allclose(y[1, 0, :, 1], W @ x[1, 0, :, 1], atol=1e-5)

    def test_invertibility(self, key, dim, random_params):
        """inverse(forward(x)) = x and log-dets cancel."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (4, 4, dim, 3))

        result = check_invertibility(
            lambda z: transform.forward(random_params, z),
            lambda z: transform.inverse(random_params, z),
            x,
        )

        assert result["reconstruction_error"] < 1e-4
        assert result["logdet_error"] < 1e-4

    def test_logdet_scales_with_positions(self, key, dim, random_params):
        """log_det = n_positions * sum(log_diag) per sample."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (3, 5, dim, 2))

        _, ld = transform.forward(random_params, x)

        expected = 15 * jnp.sum(random_params["log_diag"])
        assert jnp.allclose(ld, expected, rtol=1e-5)

    def test_logdet_vs_autodiff(self, key, dim, random_params):
        """Log-det matches the autodiff Jacobian of a single sample."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (2, 1, dim, 1))

        def flat_forward(v):
            return transform.forward(random_params, v.reshape(x.shape))[0].reshape(-1)

        J = jax.jacfwd(flat_forward)(x.reshape(-1))
        _, ld = transform.forward(random_params, x)

        assert jnp.allclose(ld[0], jnp.linalg.slogdet(J)[1], atol=1e-4)

    def test_backward_matches_vjp(self, key, dim, random_params):
        """backward recomputes x and returns the vector-Jacobian product."""
        transform = ChannelLinear(dim=dim)
        kx, kd = jax.random.split(key)
        x = jax.random.normal(kx, (3, 3, dim, 2))
        dy = jax.random.normal(kd, x.shape)
        y, _ = transform.forward(random_params, x)

        dx, x_rec, dparams = transform.backward(random_params, dy, y)

        _, vjp_fn = jax.vjp(lambda p, z: transform.forward(p, z)[0], random_params, x)
        dparams_ref, dx_ref = vjp_fn(dy)
        assert jnp.allclose(x_rec, x, atol=1e-4)
        assert jnp.allclose(dx, dx_ref, atol=1e-4)
        assert tree_max_abs_diff(dparams, dparams_ref) < 1e-3

    def test_backward_inv_matches_vjp(self, key, dim, random_params):
        transform = ChannelLinear(dim=dim)
        kx, kd = jax.random.split(key)
        y = jax.random.normal(kx, (3, 3, dim, 2))
        dx = jax.random.normal(kd, y.shape)
        x, _ = transform.inverse(random_params, y)

        dy, y_rec, _ = transform.backward_inv(random_params, dx, x)

        _, vjp_fn = jax.vjp(lambda z: transform.inverse(random_params, z)[0], y)
        (dy_ref,) = vjp_fn(dx)
        assert jnp.allclose(y_rec, y, atol=1e-4)
        assert jnp.allclose(dy, dy_ref, atol=1e-4)

    def test_logdet_cotangent_reaches_params(self, key, dim, random_params):
        """dlogdet contributes n_positions * dlogdet to d log_diag."""
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (2, 2, dim, 1))
        y, _ = transform.forward(random_params, x)

        _, _, dparams = transform.backward(
            random_params, jnp.zeros_like(y), y, dlogdet=jnp.ones((1,))
        )

        assert jnp.allclose(dparams["log_diag"], 4.0, atol=1e-5)

    def test_wrong_input_dim_raises(self, dim, identity_params):
        transform = ChannelLinear(dim=dim)
        x_wrong = jnp.zeros((2, 2, dim + 1, 1))

        with pytest.raises(ShapeError, match="expected input channel dim"):
            transform.forward(identity_params, x_wrong)

    def test_wrong_lower_shape_raises(self, dim):
        transform = ChannelLinear(dim=dim)
        bad_params = {
            "lower": jnp.zeros((dim + 1, dim)),
            "upper": jnp.zeros((dim, dim)),
            "log_diag": jnp.zeros(dim),
        }

        with pytest.raises(ValueError, match="lower must have shape"):
            transform.forward(bad_params, jnp.zeros((2, 2, dim, 1)))

    def test_missing_params_raises(self, dim):
        transform = ChannelLinear(dim=dim)

        with pytest.raises(KeyError):
            transform.forward({}, jnp.zeros((2, 2, dim, 1)))

    def test_jit_compatible(self, key, dim, random_params):
        transform = ChannelLinear(dim=dim)
        x = jax.random.normal(key, (2, 2, dim, 3))

        forward_jit = jax.jit(lambda p, z: transform.forward(p, z))
        inverse_jit = jax.jit(lambda p, z: transform.inverse(p, z))

        y, _ = forward_jit(random_params, x)
        x_rec, _ = inverse_jit(random_params, y)

        assert jnp.allclose(x, x_rec, atol=1e-4)


# ============================================================================
# ChannelPermutation Tests
# ============================================================================
class TestChannelPermutation:
    """Tests for ChannelPermutation."""

    @pytest.fixture
    def reverse_perm(self, dim):
        return jnp.arange(dim - 1, -1, -1)

    def test_forward_reverses(self, key, dim, reverse_perm):
        transform = ChannelPermutation(perm=reverse_perm)
        x = jax.random.normal(key, (2, 2, dim, 1))

        y, ld = transform.forward({}, x)

        assert jnp.array_equal(y, jnp.flip(x, axis=-2))
        assert jnp.allclose(ld, 0.0)

    def test_invertibility(self, key):
        transform = ChannelPermutation(perm=jnp.array([2, 0, 3, 1]))
        x = jax.random.normal(key, (3, 3, 4, 2))

        y, _ = transform.forward({}, x)
        x_rec, _ = transform.inverse({}, y)

        assert jnp.array_equal(x, x_rec)

    def test_backward_is_transpose(self, key):
        """Adjoint of a permutation equals its inverse."""
        transform = ChannelPermutation(perm=jnp.array([2, 0, 3, 1]))
        kx, kd = jax.random.split(key)
        x = jax.random.normal(kx, (2, 2, 4, 1))
        dy = jax.random.normal(kd, x.shape)
        y, _ = transform.forward({}, x)

        dx, x_rec, dparams = transform.backward({}, dy, y)

        _, vjp_fn = jax.vjp(lambda z: transform.forward({}, z)[0], x)
        assert jnp.array_equal(x_rec, x)
        assert jnp.allclose(dx, vjp_fn(dy)[0])
        assert dparams == {}

    def test_backward_inv(self, key):
        transform = ChannelPermutation(perm=jnp.array([1, 0]))
        x = jax.random.normal(key, (2, 2, 2, 1))

        dy, y, _ = transform.backward_inv({}, x, x)

        assert jnp.array_equal(y, jnp.flip(x, axis=-2))
        assert jnp.array_equal(dy, y)

    def test_wrong_input_dim_raises(self, dim, reverse_perm):
        transform = ChannelPermutation(perm=reverse_perm)

        with pytest.raises(ShapeError, match="channel dimension"):
            transform.forward({}, jnp.zeros((2, 2, dim + 1, 1)))

    def test_non_1d_perm_raises(self):
        with pytest.raises(ValueError, match="must be 1D"):
            ChannelPermutation(perm=jnp.zeros((3, 3), dtype=jnp.int32))

    def test_non_integer_perm_raises(self):
        with pytest.raises(TypeError, match="must be integer"):
            ChannelPermutation(perm=jnp.array([0.0, 1.0, 2.0]))


# ============================================================================
# AffineCouplingBlock Tests
# ============================================================================
class TestAffineCouplingBlock:
    """Tests for AffineCouplingBlock."""

    def test_identity_at_init(self, key):
        """Zero-initialized conditioner gives the identity map."""
        block, params = _make_coupling(key, perturb=False)
        xa, xb = jax.random.normal(key, (2, 4, 4, 2, 3))

        ya, yb, ld = block.forward(params, xa, xb)

        assert jnp.array_equal(ya, xa)
        assert jnp.allclose(yb, xb, atol=1e-6)
        assert jnp.allclose(ld, 0.0, atol=1e-6)

    def test_first_half_passes_through(self, key):
        block, params = _make_coupling(key)
        xa, xb = jax.random.normal(key, (2, 4, 4, 2, 3))

        ya, yb, ld = block.forward(params, xa, xb)

        assert jnp.array_equal(ya, xa)
        assert not jnp.allclose(yb, xb)
        assert ld.shape == (3,)

    def test_invertibility(self, key):
        block, params = _make_coupling(key)
        xa, xb = jax.random.normal(key, (2, 4, 4, 2, 3))

        ya, yb, ld_fwd = block.forward(params, xa, xb)
        xa_rec, xb_rec, ld_inv = block.inverse(params, ya, yb)

        assert jnp.array_equal(xa_rec, xa)
        assert jnp.allclose(xb_rec, xb, atol=1e-5)
        assert jnp.allclose(ld_fwd + ld_inv, 0.0, atol=1e-5)

    def test_logdet_vs_autodiff(self, key):
        """log_det equals log|det ∂yb/∂xb| for one sample."""
        block, params = _make_coupling(key, spatial_shape=(2, 2))
        xa, xb = jax.random.normal(key, (2, 2, 2, 2, 1))

        def flat_forward(v):
            return block.forward(params, xa, v.reshape(xb.shape))[1].reshape(-1)

        J = jax.jacfwd(flat_forward)(xb.reshape(-1))
        _, _, ld = block.forward(params, xa, xb)

        assert jnp.allclose(ld[0], jnp.linalg.slogdet(J)[1], atol=1e-4)

    def test_backward_matches_vjp(self, key):
        """backward recovers the inputs and matches jax.vjp of forward."""
        block, params = _make_coupling(key)
        kx, kd = jax.random.split(key)
        xa, xb = jax.random.normal(kx, (2, 4, 4, 2, 2))
        dya, dyb = jax.random.normal(kd, (2, 4, 4, 2, 2))
        ya, yb, _ = block.forward(params, xa, xb)

        dxa, dxb, xa_rec, xb_rec, dparams = block.backward(params, dya, dyb, ya, yb)

        _, vjp_fn = jax.vjp(lambda p, a, b: block.forward(p, a, b)[:2], params, xa, xb)
        dparams_ref, dxa_ref, dxb_ref = vjp_fn((dya, dyb))
        assert jnp.allclose(xa_rec, xa)
        assert jnp.allclose(xb_rec, xb, atol=1e-5)
        assert jnp.allclose(dxa, dxa_ref, atol=1e-4)
        assert jnp.allclose(dxb, dxb_ref, atol=1e-4)
        assert tree_max_abs_diff(dparams, dparams_ref) < 1e-3

    def test_backward_zero_seed(self, key):
        """With a zero seed for ya, dxa is the conditioning contribution only."""
        block, params = _make_coupling(key, perturb=False)
        xa, xb = jax.random.normal(key, (2, 4, 4, 2, 1))
        ya, yb, _ = block.forward(params, xa, xb)
        dyb = jnp.ones_like(yb)

        dxa, dxb, _, _, _ = block.backward(params, jnp.zeros_like(ya), dyb, ya, yb)

        # Identity block: conditioner output is zero, so xa has no influence.
        assert jnp.allclose(dxa, 0.0, atol=1e-6)
        assert jnp.allclose(dxb, dyb, atol=1e-6)

    def test_backward_inv_matches_vjp(self, key):
        block, params = _make_coupling(key)
        kx, kd = jax.random.split(key)
        ya, yb = jax.random.normal(kx, (2, 4, 4, 2, 2))
        dxa, dxb = jax.random.normal(kd, (2, 4, 4, 2, 2))
        xa, xb, _ = block.inverse(params, ya, yb)

        dya, dyb, ya_rec, yb_rec, _ = block.backward_inv(params, dxa, dxb, xa, xb)

        _, vjp_fn = jax.vjp(lambda a, b: block.inverse(params, a, b)[:2], ya, yb)
        dya_ref, dyb_ref = vjp_fn((dxa, dxb))
        assert jnp.allclose(yb_rec, yb, atol=1e-5)
        assert jnp.allclose(dya, dya_ref, atol=1e-4)
        assert jnp.allclose(dyb, dyb_ref, atol=1e-4)

    def test_logdet_gradient(self, key):
        """dlogdet pulls back d(sum log_scale)/d(params)."""
        block, params = _make_coupling(key)
        xa, xb = jax.random.normal(key, (2, 4, 4, 2, 2))
        ya, yb, _ = block.forward(params, xa, xb)

        _, _, _, _, dparams = block.backward(
            params, jnp.zeros_like(ya), jnp.zeros_like(yb), ya, yb, dlogdet=1.0
        )

        ref = jax.grad(lambda p: block.forward(p, xa, xb)[2].sum())(params)
        assert tree_max_abs_diff(dparams, ref) < 1e-3

    def test_mismatched_halves_raise(self, key):
        block, params = _make_coupling(key)

        with pytest.raises(ShapeError, match="equal shapes"):
            block.forward(params, jnp.zeros((4, 4, 2, 1)), jnp.zeros((4, 4, 2, 2)))

    def test_wrong_channels_raise(self, key):
        block, params = _make_coupling(key)

        with pytest.raises(ShapeError, match="2 channels per half"):
            block.forward(params, jnp.zeros((4, 4, 3, 1)), jnp.zeros((4, 4, 3, 1)))

    def test_conditioner_width_checked(self, key):
        conditioner, _ = init_residual_block(
            key, (4, 4), in_channels=2, hidden_channels=4, out_channels=2
        )
        with pytest.raises(ValueError, match="2 \\* n_channels"):
            AffineCouplingBlock(n_channels=2, conditioner=conditioner)

    def test_missing_params_raise(self, key):
        block, _ = _make_coupling(key)

        with pytest.raises(KeyError, match="conditioner"):
            block.forward({}, jnp.zeros((4, 4, 2, 1)), jnp.zeros((4, 4, 2, 1)))
