import random

import numpy as np
import pytest

from convgrad.core.tensor import default_dtype

SEED = 42

def pytest_configure():
    random.seed(SEED)
    np.random.seed(SEED)


@pytest.fixture(autouse=True)
def double_precision():
    """Gradient checks run in float64; each test starts from the same RNG state."""
    np.random.seed(SEED)
    with default_dtype(np.float64):
        yield
