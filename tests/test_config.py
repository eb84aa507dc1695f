"""Tests for the backend configuration system."""

import os

import numpy as np
import pytest

import rrpp._config as _cfg
from rrpp import lm_rrpp
from rrpp._config import get_backend, set_backend, use_backend

_ENV = "RRPP_BACKEND"


def _reset():
    _cfg._backend_override = None
    os.environ.pop(_ENV, None)


class TestGetBackend:
    """Tests for get_backend() resolution order."""

    def setup_method(self):
        """Reset state before each test."""
        _reset()

    def teardown_method(self):
        """Reset state after each test."""
        _reset()

    def test_auto_detects_installed_jax(self):
        expected = "jax" if _cfg._jax_is_available() else "numpy"
        assert get_backend() == expected

    def test_env_var_overrides_auto(self):
        os.environ[_ENV] = "numpy"
        assert get_backend() == "numpy"

    def test_env_var_jax(self):
        os.environ[_ENV] = "jax"
        assert get_backend() == "jax"

    def test_env_var_case_insensitive(self):
        os.environ[_ENV] = "NumPy"
        assert get_backend() == "numpy"

    def test_unknown_env_var_ignored(self):
        os.environ[_ENV] = "tensorflow"
        expected = "jax" if _cfg._jax_is_available() else "numpy"
        assert get_backend() == expected

    def test_programmatic_override_wins_over_env(self):
        os.environ[_ENV] = "numpy"
        set_backend("jax")
        assert get_backend() == "jax"

    def test_auto_restores_default(self):
        set_backend("numpy")
        assert get_backend() == "numpy"
        set_backend("auto")
        expected = "jax" if _cfg._jax_is_available() else "numpy"
        assert get_backend() == expected


class TestSetBackend:
    """Tests for set_backend() validation."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_accepts_valid_names(self):
        for name in ("jax", "numpy", "auto"):
            set_backend(name)

    def test_case_insensitive(self):
        set_backend("JAX")
        assert get_backend() == "jax"

    def test_rejects_invalid_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("tensorflow")


class TestBackendIntegration:
    """Verify that set_backend('numpy') reaches the engine."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_numpy_backend_recorded(self):
        set_backend("numpy")
        rng = np.random.default_rng(42)
        x = rng.standard_normal(30)
        lm = lm_rrpp(2.0 * x + rng.standard_normal(30), {"x": x}, iterations=19, seed=42)
        assert lm.context.backend == "numpy"

    def test_public_api_exports(self):
        """get_backend and set_backend should be importable from the package."""
        import rrpp

        assert hasattr(rrpp, "get_backend")
        assert hasattr(rrpp, "set_backend")


class TestUseBackend:
    """Scoped overrides."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_restores_previous_override(self):
        set_backend("jax")
        with use_backend("numpy") as active:
            assert active == "numpy"
            assert get_backend() == "numpy"
        assert get_backend() == "jax"

    def test_restores_on_error(self):
        with pytest.raises(RuntimeError), use_backend("numpy"):
            raise RuntimeError("boom")
        assert _cfg._backend_override is None

    def test_rejects_invalid_name(self):
        with pytest.raises(ValueError, match="Unknown backend"), use_backend("cuda"):
            pass
        assert _cfg._backend_override is None
