import logging
import os

import pytest
from hypothesis import HealthCheck, settings

# Strict CI profile: heavy exploration for regression/CI
settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    derandomize=False,
    print_blob=True,
)

# Light profile for mutation testing: faster per-mutant; still meaningful
settings.register_profile(
    "mutation",
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    derandomize=True,  # stable example sequence for reproducibility
)

# Default to CI unless caller overrides with HYPOTHESIS_PROFILE
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))

HEADER = '// <!-- <mdb:mork:z v="1.4"/> -->\n'


@pytest.fixture(autouse=True)
def reset_unmork_logger():
    """main() binds a handler to the captured stderr; drop it after each test."""
    logger = logging.getLogger("unmork")
    yield
    logger.handlers[:] = []
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def mork_file(tmp_path):
    """Write a Mork file (header prepended) and return its path."""

    def _write(body: str, name: str = "abook.mab", header: str = HEADER):
        path = tmp_path / name
        path.write_bytes((header + body).encode("latin-1"))
        return path

    return _write
