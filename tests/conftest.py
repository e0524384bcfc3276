from unittest import mock

import pytest


@pytest.fixture
def fake_clock():
    """Replace the clock seen by azure_rest so polling never really sleeps."""
    with mock.patch("azure_rest.time") as clock:
        clock.time.return_value = 0
        yield clock
