import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def small_data():
    """Two exposures, six lags, 60 observations with a Gaussian outcome."""
    from tdlmm import DataGenerator
    return DataGenerator(n_samples=60, n_exposures=2, n_lags=6, noise=0.5, random_seed=3).generate(
        "single", lags=(2, 4))
