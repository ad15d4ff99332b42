import pytest

from fakes import FakeDocument, FakeElement, listing_card, listing_page
from harvester.collector.extractor import FieldExtractor, derive_multiple
from harvester.collector.profile import load_profile
from harvester.store import AggregationStore


def test_extracts_all_fields_from_listing_card():
    result = FieldExtractor().extract(listing_page([listing_card("101")]), page_number=3)

    assert result.pattern == 'div[id^="listing-"]'
    assert len(result.records) == 1
    record = result.records[0]
    assert record.identity == "101"
    assert record.source_page == 3
    assert record.fields["title"] == "Profitable SaaS tool"
    assert record.fields["price"] == pytest.approx(120000)
    assert record.fields["monthly_revenue"] == pytest.approx(4000)
    assert record.fields["value_multiple"] == pytest.approx(2.5)
    assert record.fields["category"] == "SaaS"
    assert record.fields["badges"] == ["Verified"]
    assert record.fields["age_months"] == 36
    assert record.overall_confidence == 100
    assert record.derived_fields == set()


def test_page_with_one_container_missing_identity():
    cards = [listing_card(str(1000 + i)) for i in range(24)] + [listing_card(None)]
    result = FieldExtractor().extract(listing_page(cards), page_number=1)

    assert result.containers == 25
    assert len(result.records) == 24
    assert result.rejected_identity == 1

    store = AggregationStore()
    for record in result.records:
        store.upsert(record)
    store.note_rejected(result.rejected_identity)
    coverage = store.coverage()
    assert coverage.unique_collected == 24
    assert coverage.rejected == 1


def test_identity_falls_back_to_normalized_url():
    card = listing_card(None, href="/12345?ref=search")
    result = FieldExtractor().extract(listing_page([card]))
    assert [r.identity for r in result.records] == ["https://flippa.com/12345"]


def test_missing_multiple_is_derived_without_points():
    card = FakeElement(
        "Tiny blog\nUSD $48,000\n$1,000 p/mo",
        attrs={"id": "listing-7"},
        children={
            "p.tw-text-gray-900": [FakeElement("Tiny blog")],
            "span.tw-text-xl": [FakeElement("USD $48,000")],
        },
    )
    record = FieldExtractor().extract(listing_page([card])).records[0]

    assert record.fields["value_multiple"] == pytest.approx(4.0)
    assert "value_multiple" in record.derived_fields
    assert record.field_confidence["value_multiple"] == 0
    assert record.overall_confidence == 60


def test_low_confidence_records_are_dropped():
    card = FakeElement(
        "Just a title with nothing else to say",
        attrs={"id": "listing-9"},
        children={"p.tw-text-gray-900": [FakeElement("Just a title with nothing else to say")]},
    )
    result = FieldExtractor().extract(listing_page([card]))
    assert result.records == []
    assert result.rejected_confidence == 1


def test_skips_container_pattern_that_matches_page_chrome():
    chrome = [FakeElement("x", attrs={"id": "listing-nav"}) for _ in range(3)]
    card = listing_card(None)
    card.attrs = {"data-listing-id": "77"}
    document = FakeDocument(
        children={
            'div[id^="listing-"]': chrome,
            "[data-listing-id]": [card],
        }
    )
    result = FieldExtractor().extract(document)
    assert result.pattern == "[data-listing-id]"
    assert [r.identity for r in result.records] == ["77"]


def test_no_containers_yields_empty_result():
    result = FieldExtractor().extract(FakeDocument())
    assert result.empty
    assert result.pattern is None


def test_primary_strategy_scores_higher_than_fallback():
    card = FakeElement(
        "Widget shop\nPrice: $9,000\n$500 p/mo",
        attrs={"id": "listing-5"},
        children={"p.tw-text-gray-900": [FakeElement("Widget shop")]},
    )
    record = FieldExtractor().extract(listing_page([card])).records[0]
    assert record.fields["price"] == pytest.approx(9000)
    assert record.field_confidence["title"] == 100
    assert record.field_confidence["price"] < 100


def test_profile_loaded_from_yaml(tmp_path):
    path = tmp_path / "profile.yaml"
    path.write_text(
        """
name: shop
base_url: https://shop.test
containers:
  - selector: li.item
    id_attribute: data-id
    min_text_chars: 5
fields:
  title:
    - kind: selector
      selector: h2
  price:
    - kind: pattern
      pattern: '\\$([\\d,]+)'
      parse: money
weights:
  title: 50
  price: 50
min_confidence: 50
""",
        encoding="utf-8",
    )
    profile = load_profile(path)
    item = FakeElement("Red chair $1,200", attrs={"data-id": "a1"}, children={"h2": [FakeElement("Red chair")]})
    document = FakeDocument(children={"li.item": [item]})

    record = FieldExtractor(profile).extract(document).records[0]
    assert record.identity == "a1"
    assert record.fields == {"title": "Red chair", "price": pytest.approx(1200)}
    assert record.overall_confidence == 100


def test_profile_rejects_weights_for_unknown_fields(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(
        "containers: [{selector: li}]\nfields: {title: [{kind: selector, selector: h2}]}\nweights: {color: 10}\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        load_profile(path)


def test_derive_multiple():
    assert derive_multiple(120000, 4000) == pytest.approx(2.5)
    assert derive_multiple(None, 4000) is None
    assert derive_multiple(120000, 0) is None


def test_container_that_raises_is_counted_not_fatal():
    class DetachedElement(FakeElement):
        def query_selector_all(self, selector):
            raise RuntimeError("Element is not attached to the DOM")

    cards = [listing_card(str(i)) for i in range(3)]
    cards.append(DetachedElement(cards[0].text, attrs={"id": "listing-99"}))
    result = FieldExtractor().extract(listing_page(cards), page_number=4)

    assert len(result.records) == 3
    assert result.rejected_errors == 1
    assert result.containers == 4
