import pytest

from harvester.config import HarvestConfig


@pytest.fixture
def config():
    return HarvestConfig(
        start_url="https://example.test/search",
        base_url="https://example.test",
        delay_range_ms=(0, 0),
        min_delay_ms=0,
        backoff_base_s=0.0,
        storage_state_path=None,
    )


@pytest.fixture
def no_sleep():
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
