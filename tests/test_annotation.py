"""Tests for chunked article scoring."""

import asyncio
import json

import pytest

from market_newsletter.models.content import Annotation
from market_newsletter.services.annotation_service import (
    AnnotationService,
    ScoringResponseError,
    make_chunks,
    parse_scoring_response,
)
from market_newsletter.utils.error_monitoring import ErrorHandler, ErrorKind

from conftest import HOUR_MS, make_item


NOW = 1_700_000_000_000


class FakeAI:
    """Replays scripted responses; an Exception instance is raised instead of returned."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def generate(self, prompt_key, context, max_tokens=4096):
        self.calls.append((prompt_key, context))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def scoring_json(entries):
    return json.dumps([
        {"index": idx, "importance": imp, "category": "macro", "summary": f"summary {idx}"}
        for idx, imp in entries
    ])


def items_newest_first(count):
    return [make_item(n, published=NOW - n * 1000) for n in range(count)]


def test_make_chunks_preserves_order_and_sizes():
    chunks = make_chunks(items_newest_first(45), 20)

    assert [len(c.items) for c in chunks] == [20, 20, 5]
    assert [c.start_index for c in chunks] == [0, 20, 40]
    assert chunks[2].items[0].id == "item-40"


def test_make_chunks_rejects_zero_batch_size():
    with pytest.raises(ValueError):
        make_chunks(items_newest_first(3), 0)


def test_failed_chunk_falls_back_to_neutral_without_touching_others():
    items = items_newest_first(25)
    ai = FakeAI([
        scoring_json([(j, 1) for j in range(1, 21)]),
        RuntimeError("service unavailable"),
    ])
    handler = ErrorHandler()
    service = AnnotationService(ai, batch_size=20, error_handler=handler)

    result = asyncio.run(service.annotate(items))

    assert result.chunks_total == 2
    assert result.chunks_failed == 1
    assert handler.count(ErrorKind.CHUNK_ANNOTATION) == 1
    assert len(result.items) == 25
    first_twenty = [e for e in result.items if e.item.id in {f"item-{n}" for n in range(20)}]
    assert all(e.importance == 1 and e.annotation.summary for e in first_twenty)
    last_five = [e for e in result.items if e.item.id in {f"item-{n}" for n in range(20, 25)}]
    assert all(e.annotation == Annotation.neutral() for e in last_five)


def test_unparseable_response_neutralizes_whole_chunk():
    ai = FakeAI(["I could not rate these articles, sorry."])
    result = asyncio.run(AnnotationService(ai).annotate(items_newest_first(3)))

    assert result.chunks_failed == 1
    assert all(e.annotation.is_neutral for e in result.items)


def test_results_are_matched_by_declared_index_not_position():
    items = items_newest_first(3)
    response = json.dumps([
        {"index": 3, "importance": 5, "summary": "third"},
        {"index": 1, "importance": 1, "summary": "first"},
        {"index": 2, "importance": 2, "summary": "second"},
    ])
    result = asyncio.run(AnnotationService(FakeAI([response])).annotate(items))

    by_id = {e.item.id: e.annotation for e in result.items}
    assert by_id["item-0"].summary == "first"
    assert by_id["item-1"].summary == "second"
    assert by_id["item-2"].summary == "third"


def test_missing_indices_get_neutral_annotation():
    response = json.dumps([{"index": 2, "importance": 1, "summary": "only one"}])
    result = asyncio.run(AnnotationService(FakeAI([response])).annotate(items_newest_first(3)))

    assert result.chunks_failed == 0
    by_id = {e.item.id: e.annotation for e in result.items}
    assert by_id["item-1"].importance == 1
    assert by_id["item-0"].is_neutral
    assert by_id["item-2"].is_neutral


def test_output_sorted_by_importance_then_recency():
    items = [
        make_item(0, published=NOW - 3 * HOUR_MS),
        make_item(1, published=NOW - HOUR_MS),
        make_item(2, published=NOW - 2 * HOUR_MS),
        make_item(3, published=NOW),
    ]
    response = scoring_json([(1, 2), (2, 1), (3, 2), (4, 1)])
    result = asyncio.run(AnnotationService(FakeAI([response])).annotate(items))

    assert [e.item.id for e in result.items] == ["item-3", "item-1", "item-2", "item-0"]


def test_chunks_are_scored_sequentially_with_local_indices():
    items = items_newest_first(5)
    ai = FakeAI([scoring_json([(1, 1), (2, 1)]), scoring_json([(1, 2), (2, 2)]), scoring_json([(1, 3)])])
    asyncio.run(AnnotationService(ai, batch_size=2).annotate(items))

    assert [context["count"] for _, context in ai.calls] == [2, 2, 1]
    assert all(key == "article_scoring" for key, _ in ai.calls)
    assert "[Article 1]" in ai.calls[1][1]["articles"]
    assert "Article 2" in ai.calls[1][1]["articles"]  # item-2 title
    assert "[Article 3]" not in ai.calls[1][1]["articles"]


def test_empty_input_makes_no_calls():
    ai = FakeAI([])
    result = asyncio.run(AnnotationService(ai).annotate([]))

    assert result.items == []
    assert result.chunks_total == 0
    assert ai.calls == []


def test_annotate_neutral_keeps_recency_order():
    items = [make_item(0, published=NOW - HOUR_MS), make_item(1, published=NOW)]
    result = AnnotationService.annotate_neutral(items)

    assert [e.item.id for e in result.items] == ["item-1", "item-0"]
    assert all(e.importance == 3 and e.annotation.summary is None for e in result.items)


def test_articles_text_strips_html_and_truncates():
    item = make_item(1, body="<p>" + "x" * 3000 + "</p>")
    text = AnnotationService.build_articles_text([item])

    assert text.startswith("[Article 1]\nTitle: Article 1\nSource: Source src-a\nContent: ")
    assert "<p>" not in text
    assert text.count("x") == 2000


def test_parse_response_surrounded_by_prose():
    text = 'Here are the ratings:\n```json\n[{"index": 1, "importance": 2, "category": "crypto", ' \
           '"summary": " BTC rallies ", "keyPoints": ["ETF inflows"], "tickers": ["BTC"]}]\n```\nDone.'
    annotations = parse_scoring_response(text)

    assert annotations[1] == Annotation(
        importance=2, category="crypto", summary="BTC rallies", key_points=["ETF inflows"], tickers=["BTC"],
    )


def test_parse_response_normalizes_bad_fields():
    text = json.dumps([
        {"index": 1, "importance": 9, "category": "sports", "summary": ""},
        {"index": "2", "importance": "1"},
        {"index": 3, "importance": 2.5},
        {"importance": 1},
        {"index": 1, "importance": 1, "summary": "duplicate"},
    ])
    annotations = parse_scoring_response(text)

    assert annotations[1] == Annotation()
    assert annotations[2].importance == 1
    assert annotations[3].importance == 3
    assert set(annotations) == {1, 2, 3}


@pytest.mark.parametrize("text", [
    "",
    "no array here",
    "[not json at all]",
    "[]",
    "[1, 2, 3]",
])
def test_parse_response_rejects_unusable_text(text):
    with pytest.raises(ScoringResponseError):
        parse_scoring_response(text)


def test_parse_response_skips_bracketed_labels_before_payload():
    payload = scoring_json([(1, 1), (2, 4)])
    annotations = parse_scoring_response(f"Ratings for [Article 1] and [Article 2]:\n{payload}")

    assert annotations[1].importance == 1
    assert annotations[2].importance == 4


def test_parse_response_ignores_bracketed_text_after_payload():
    payload = scoring_json([(1, 2)])
    annotations = parse_scoring_response(f"{payload}\nNote: article 1 cites [Reuters].")

    assert annotations[1].importance == 2
    assert annotations[1].summary == "summary 1"


def test_parse_response_skips_arrays_without_objects():
    text = 'Scores [1, 2] below:\n[{"index": 1, "importance": 1, "keyPoints": ["rates"]}]'
    annotations = parse_scoring_response(text)

    assert annotations[1].importance == 1
    assert annotations[1].key_points == ["rates"]


def test_echoed_article_labels_do_not_fail_the_chunk():
    items = items_newest_first(2)
    response = "[Article 1] is the bigger story.\n" + scoring_json([(1, 1), (2, 2)]) + "\n(see [Article 2])"
    result = asyncio.run(AnnotationService(FakeAI([response])).annotate(items))

    assert result.chunks_failed == 0
    assert [e.importance for e in result.items] == [1, 2]


def test_malformed_first_chunk_ranks_below_important_items_from_second():
    items = items_newest_first(25)
    ai = FakeAI([
        "Sorry, here you go: [{index: 1, importance: 1,",
        scoring_json([(1, 1), (2, 2), (3, 1), (4, 4), (5, 5)]),
    ])
    result = asyncio.run(AnnotationService(ai, batch_size=20).annotate(items))

    assert result.chunks_total == 2
    assert result.chunks_failed == 1
    order = [e.item.id for e in result.items]
    assert order[:3] == ["item-20", "item-22", "item-21"]
    assert order[3:23] == [f"item-{n}" for n in range(20)]
    assert order[23:] == ["item-23", "item-24"]
    assert all(e.annotation.is_neutral for e in result.items[3:23])
