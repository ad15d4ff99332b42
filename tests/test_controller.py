from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeDocument, FakeElement, FakeRenderer, listing_card
from harvester.collector.controller import ControllerState, CoverageController, build_page_url
from harvester.collector.estimator import MarketplaceEstimator
from harvester.collector.extractor import FieldExtractor
from harvester.errors import ErrorKind, TransientNavigationError
from harvester.models import StopReason
from harvester.store import AggregationStore


def _page(first_id, count, body=None):
    children = {'div[id^="listing-"]': [listing_card(str(first_id + i)) for i in range(count)]}
    if body is not None:
        children["body"] = [FakeElement(body)]
    return FakeDocument(children=children)


def _controller(config, renderer, sleep, **kwargs):
    return CoverageController(
        renderer=renderer,
        extractor=FieldExtractor(),
        estimator=MarketplaceEstimator(config),
        store=kwargs.pop("store", AggregationStore()),
        config=config,
        sleep=sleep,
        **kwargs,
    )


def test_build_page_url_replaces_existing_page_param():
    assert build_page_url("https://x.test/search", 3) == "https://x.test/search?page=3"
    assert build_page_url("https://x.test/search?q=a&page=2", 5) == "https://x.test/search?q=a&page=5"
    assert build_page_url("https://x.test/search?page=2&q=a", 5) == "https://x.test/search?q=a&page=5"


def test_empty_streak_stops_before_page_ceiling(config, no_sleep):
    controller = _controller(config, FakeRenderer(), no_sleep)
    report = controller.run()

    assert report.stop_reason is StopReason.EMPTY_STREAK
    assert report.stop_reason.value == "too many consecutive empty pages"
    assert report.pages_processed == config.max_empty_pages
    assert report.error_count == config.max_empty_pages
    assert controller.state is ControllerState.STOPPED


def test_stop_condition_precedence(config, no_sleep):
    store = AggregationStore()
    for page in range(1, 6):
        store.note_page(page, empty=True)
    controller = _controller(config, FakeRenderer(), no_sleep, store=store, end_page=3)

    assert controller.check_stop(4) is StopReason.EMPTY_STREAK
    assert controller.check_stop(config.page_ceiling + 1) is StopReason.PAGE_CEILING
    controller.request_stop()
    assert controller.check_stop(2) is StopReason.STOP_REQUESTED


def test_stops_when_coverage_target_reached(config, no_sleep):
    renderer = FakeRenderer(pages={1: _page(1000, 25, body="50 results found"), 2: _page(2000, 25)})
    progress = []
    controller = _controller(config, renderer, no_sleep, on_progress=progress.append)
    report = controller.run()

    assert report.stop_reason is StopReason.TARGET_REACHED
    assert report.unique_collected == 50
    assert report.coverage == pytest.approx(1.0)
    assert report.strategy == "standard"
    # page 1 is reused from the estimate navigation
    assert renderer.navigations == [
        "https://example.test/search?page=1",
        "https://example.test/search?page=2",
    ]
    assert [p.pages_processed for p in progress] == [1, 2, 2]
    assert progress[-1].status == "finished"
    assert progress[-1].stop_reason is StopReason.TARGET_REACHED


def test_stops_at_predicted_natural_end(config, no_sleep):
    renderer = FakeRenderer(
        pages={
            1: _page(1000, 20, body="60 results found"),
            2: _page(2000, 20),
            3: _page(3000, 10),
        }
    )
    report = _controller(config, renderer, no_sleep).run()
    assert report.stop_reason is StopReason.NATURAL_END
    assert report.last_page == 3
    assert report.unique_collected == 50


def test_assigned_range_is_respected(config, no_sleep):
    renderer = FakeRenderer(
        pages={
            1: _page(1000, 25, body="1,000 results found"),
            2: _page(2000, 25),
            3: _page(3000, 25),
            4: _page(4000, 25),
        }
    )
    controller = _controller(config, renderer, no_sleep, start_page=2, end_page=3)
    report = controller.run()

    assert report.stop_reason is StopReason.RANGE_EXHAUSTED
    assert report.pages_processed == 2
    assert sorted(controller.store.coverage().pages_processed) == [2, 3]


def test_transient_error_is_retried(config, no_sleep):
    config = config.model_copy(update={"fixed_pages": 2})
    renderer = FakeRenderer(
        pages={1: _page(1000, 25), 2: _page(2000, 25)},
        failures={2: [TransientNavigationError("Timeout 60000ms exceeded", ErrorKind.TIMEOUT)]},
    )
    report = _controller(config, renderer, no_sleep).run()

    assert report.stop_reason is StopReason.STRATEGY_LIMIT
    assert report.unique_collected == 50
    assert report.failed_pages == []
    assert renderer.navigations.count("https://example.test/search?page=2") == 2


def test_exhausted_retries_mark_page_failed_and_continue(config, no_sleep):
    config = config.model_copy(update={"fixed_pages": 3})
    error = TransientNavigationError("net::ERR_CONNECTION_RESET", ErrorKind.NAVIGATION)
    renderer = FakeRenderer(
        pages={1: _page(1000, 25), 3: _page(3000, 25)},
        failures={2: [error, error, error]},
    )
    controller = _controller(config, renderer, no_sleep)
    report = controller.run()

    assert report.failed_pages == [2]
    assert report.error_count == 1
    assert report.unique_collected == 50
    assert controller.store.coverage().consecutive_empty_pages == 0


def test_empty_page_recovers_on_reload(config, no_sleep):
    config = config.model_copy(update={"fixed_pages": 2})

    class FlakyRenderer(FakeRenderer):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.page_two_loads = 0

        def document(self):
            if self.current == 2:
                self.page_two_loads += 1
                if self.page_two_loads == 1:
                    return FakeDocument()
            return super().document()

    renderer = FlakyRenderer(pages={1: _page(1000, 25), 2: _page(2000, 25)})
    report = _controller(config, renderer, no_sleep).run()

    assert report.unique_collected == 50
    assert report.error_count == 0


def test_periodic_recheck_navigates_to_first_page(config, no_sleep):
    config = config.model_copy(update={"fixed_pages": 4, "recheck_interval": 2})
    renderer = FakeRenderer(pages={n: _page(n * 1000, 25) for n in range(1, 5)})
    report = _controller(config, renderer, no_sleep).run()

    assert report.stop_reason is StopReason.STRATEGY_LIMIT
    assert report.unique_collected == 100
    assert renderer.navigations.count("https://example.test/search?page=1") == 2


def test_request_stop_finishes_current_page(config, no_sleep):
    renderer = FakeRenderer(pages={n: _page(n * 1000, 25) for n in range(1, 5)})
    holder = {}

    def on_progress(progress):
        if progress.pages_processed == 1:
            holder["controller"].request_stop()

    controller = _controller(config, renderer, no_sleep, on_progress=on_progress)
    holder["controller"] = controller
    report = controller.run()

    assert report.stop_reason is StopReason.STOP_REQUESTED
    assert report.pages_processed == 1


def test_worker_range_beyond_exploratory_budget_is_walked(config, no_sleep):
    renderer = FakeRenderer(pages={n: _page(n * 1000, 25) for n in [1] + list(range(101, 151))})
    controller = _controller(config, renderer, no_sleep, start_page=101, end_page=150)
    report = controller.run()

    assert report.strategy == "exploratory"
    assert report.stop_reason is StopReason.RANGE_EXHAUSTED
    assert report.pages_processed == 50
    assert report.unique_collected == 50 * 25
    assert controller.strategy_limit() == 200


def test_fixed_budget_counts_from_start_page(config, no_sleep):
    config = config.model_copy(update={"fixed_pages": 2})
    renderer = FakeRenderer(pages={n: _page(n * 1000, 25) for n in (1, 40, 41, 42)})
    report = _controller(config, renderer, no_sleep, start_page=40).run()

    assert report.stop_reason is StopReason.STRATEGY_LIMIT
    assert report.last_page == 41


def test_volatility_buffer_extends_predicted_end_and_budget(config, no_sleep):
    t0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    moments = iter([t0, t0 + timedelta(minutes=30)])
    estimator = MarketplaceEstimator(config, clock=lambda: next(moments))
    estimator.estimate(FakeDocument(children={"body": [FakeElement("5,900 results found")]}))

    renderer = FakeRenderer(pages={1: _page(1000, 25, body="6,800 results found")})
    store = AggregationStore()
    controller = CoverageController(
        renderer=renderer,
        extractor=FieldExtractor(),
        estimator=estimator,
        store=store,
        config=config,
        sleep=no_sleep,
    )
    controller.refresh_estimate()

    assert estimator.buffer_pages() == 72
    assert controller.predicted_last_page() == 272 + 72
    assert controller.strategy.name == "aggressive"
    assert controller.strategy_limit() == 272 + 72
    assert controller.strategy.recheck_interval == config.volatile_recheck_interval
    assert store.coverage().volatility_buffer == 72 * config.page_size
    assert controller.check_stop(300) is None
    assert controller.check_stop(345) is StopReason.STRATEGY_LIMIT
