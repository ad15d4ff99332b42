import pytest
from pydantic import ValidationError

from harvester.config import HarvestConfig, load_config, load_scheduler_config
from harvester.models import SchedulePolicy

CONFIG_YAML = """
start_url: https://example.test/search?q=saas
page_ceiling: 100
completeness_target: 0.9
delay_range_ms: [1000, 3000]
scheduler:
  workers: 3
  total_pages: 90
  policies: [continuous, night_window]
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("HARVEST_PAGE_CEILING", "HARVEST_HEADLESS", "HARVEST_DELAY_RANGE_MS", "HARVEST_START_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "harvest.yaml"
    path.write_text(CONFIG_YAML)
    return path


def test_defaults():
    config = HarvestConfig()
    assert config.completeness_target == 0.95
    assert config.page_ceiling == 500
    assert config.max_empty_pages == 5
    assert config.recheck_interval == 25
    assert config.schedule_policy is SchedulePolicy.CONTINUOUS


def test_yaml_values_are_loaded(config_file):
    config = load_config(config_file)
    assert config.start_url == "https://example.test/search?q=saas"
    assert config.page_ceiling == 100
    assert config.completeness_target == 0.9
    assert config.delay_range_ms == (1000, 3000)


def test_environment_beats_yaml_and_overrides_beat_environment(config_file, monkeypatch):
    monkeypatch.setenv("HARVEST_PAGE_CEILING", "200")
    monkeypatch.setenv("HARVEST_HEADLESS", "false")
    monkeypatch.setenv("HARVEST_DELAY_RANGE_MS", "500-900")

    config = load_config(config_file)
    assert config.page_ceiling == 200
    assert config.headless is False
    assert config.delay_range_ms == (500, 900)

    config = load_config(config_file, page_ceiling=300, headless=None)
    assert config.page_ceiling == 300
    assert config.headless is False


@pytest.mark.parametrize("target", [0, 1.5, -0.1])
def test_completeness_target_must_be_a_fraction(target):
    with pytest.raises(ValidationError):
        HarvestConfig(completeness_target=target)


def test_delay_range_must_be_ordered():
    with pytest.raises(ValidationError):
        HarvestConfig(delay_range_ms=(4000, 2000))


def test_scheduler_section(config_file):
    scheduler = load_scheduler_config(config_file, workers=None, max_restarts=5)
    assert scheduler.workers == 3
    assert scheduler.total_pages == 90
    assert scheduler.max_restarts == 5
    assert scheduler.policies == [SchedulePolicy.CONTINUOUS, SchedulePolicy.NIGHT_WINDOW]


def test_config_file_must_be_a_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(path)
