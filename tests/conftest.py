from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def sleep():
    """Backoff delays never actually sleep in tests."""
    with patch("http_stream.time.sleep") as sleep:
        yield sleep
