import json

import pytest

from autolister.errors import InferenceError
from autolister.models_sqlalchemy.models import AspectKeyword, AspectMiss, CategoryAspectRequirement
from autolister.services.aspect_learning import insert_keyword_pattern, review_pending
from autolister.services.ai_inference import Confidence, parse_aspect_inference

from conftest import FakeInference


def _reply(value, pattern, confidence):
    return "Here is my answer:\n" + json.dumps(
        {"aspect_value": value, "keyword_pattern": pattern, "confidence": confidence}
    )


def _miss(db, asin="B000TEST01", category_id="112529", aspect_name="Type", title="Sony WH-1000XM4 Over-Ear Headphones"):
    miss = AspectMiss(
        asin=asin,
        category_id=category_id,
        category_name="Headphones",
        aspect_name=aspect_name,
        product_title=title,
        keepa_brand="Sony",
        status="pending",
    )
    db.add(miss)
    db.commit()
    return miss


async def _review(db, client, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    return await review_pending(db, 10, client=client, item_delay=0, **kwargs)


def test_parse_aspect_inference_reads_json_inside_prose():
    parsed = parse_aspect_inference(_reply("Over-Ear", r"over[- ]?ear", "HIGH"))

    assert parsed.aspect_value == "Over-Ear"
    assert parsed.keyword_pattern == r"over[- ]?ear"
    assert parsed.confidence is Confidence.HIGH


@pytest.mark.parametrize(
    "content",
    ["no json here", '{"aspect_value": "Over-Ear", "confidence": "certain"}', '{"confidence": "high"}'],
)
def test_parse_aspect_inference_rejects_unusable_replies(content):
    assert parse_aspect_inference(content) is None


@pytest.mark.asyncio
async def test_high_confidence_creates_pattern_and_marks_processed(db_session):
    miss = _miss(db_session)
    client = FakeInference([_reply("Over-Ear", r"over[- ]?ear", "high")])

    summary = await _review(db_session, client)

    assert summary.as_dict() == {"processed": 1, "reviewNeeded": 0, "skipped": 0}
    pattern = db_session.query(AspectKeyword).one()
    assert pattern.aspect_name == "Type"
    assert pattern.keyword_pattern == r"over[- ]?ear"
    assert pattern.aspect_value == "Over-Ear"
    assert pattern.category_id == "112529"

    db_session.refresh(miss)
    assert miss.status == "processed"
    assert miss.suggested_value == "Over-Ear"
    assert miss.reviewed_at is not None
    assert "Sony WH-1000XM4" in client.prompts[0]


@pytest.mark.asyncio
@pytest.mark.parametrize("confidence", ["medium", "low"])
async def test_lower_confidence_is_parked_for_review(db_session, confidence):
    miss = _miss(db_session)
    client = FakeInference([_reply("Over-Ear", r"over[- ]?ear", confidence)])

    summary = await _review(db_session, client)

    assert summary.review_needed == 1
    assert db_session.query(AspectKeyword).count() == 0
    db_session.refresh(miss)
    assert miss.status == "review_needed"
    assert miss.suggested_value == "Over-Ear"
    assert miss.suggested_pattern == r"over[- ]?ear"
    assert confidence.capitalize() in miss.notes


@pytest.mark.asyncio
async def test_unparseable_reply_keeps_miss_pending_until_max_attempts(db_session):
    miss = _miss(db_session)
    client = FakeInference(default="I am not sure what you mean.")

    first = await _review(db_session, client)
    db_session.refresh(miss)
    assert first.skipped == 1
    assert miss.status == "pending"
    assert miss.attempts == 1

    await _review(db_session, client)
    last = await _review(db_session, client)
    db_session.refresh(miss)

    assert last.review_needed == 1
    assert miss.status == "review_needed"
    assert miss.attempts == 3
    assert db_session.query(AspectKeyword).count() == 0


@pytest.mark.asyncio
async def test_inference_failure_does_not_abort_batch(db_session):
    failing = _miss(db_session, asin="B000TEST01")
    ok = _miss(db_session, asin="B000TEST02", aspect_name="Ear Piece Design")
    client = FakeInference([
        InferenceError("HTTP 500"),
        _reply("Ear-Cup (Over the Ear)", r"over[- ]?ear", "high"),
    ])

    summary = await _review(db_session, client)

    assert summary.processed == 1
    assert summary.skipped == 1
    db_session.refresh(failing)
    db_session.refresh(ok)
    assert failing.status == "pending"
    assert failing.attempts == 1
    assert "HTTP 500" in failing.notes
    assert ok.status == "processed"


@pytest.mark.asyncio
async def test_oldest_misses_are_reviewed_first(db_session):
    for i in range(3):
        _miss(db_session, asin=f"B000TEST0{i}")
    client = FakeInference(default=_reply("Over-Ear", r"over[- ]?ear", "medium"))

    summary = await review_pending(db_session, 2, client=client, max_attempts=3, item_delay=0)

    assert summary.review_needed == 2
    pending = db_session.query(AspectMiss).filter_by(status="pending").all()
    assert [m.asin for m in pending] == ["B000TEST02"]


@pytest.mark.asyncio
async def test_selection_only_value_outside_allowed_list_is_rejected(db_session):
    db_session.add(CategoryAspectRequirement(
        category_id="112529",
        aspect_name="Type",
        required=True,
        aspect_mode="SELECTION_ONLY",
        allowed_values=["Ear-Cup (Over the Ear)", "Earbud (In Ear)"],
    ))
    miss = _miss(db_session)
    client = FakeInference([_reply("Over-Ear", r"over[- ]?ear", "high")])

    summary = await _review(db_session, client)

    assert summary.review_needed == 1
    assert db_session.query(AspectKeyword).count() == 0
    db_session.refresh(miss)
    assert "allowed values" in miss.notes
    assert "Earbud (In Ear)" in client.prompts[0]


@pytest.mark.asyncio
async def test_selection_only_value_is_normalized_to_allowed_casing(db_session):
    db_session.add(CategoryAspectRequirement(
        category_id="112529",
        aspect_name="Type",
        required=True,
        aspect_mode="SELECTION_ONLY",
        allowed_values=["Ear-Cup (Over the Ear)", "Earbud (In Ear)"],
    ))
    _miss(db_session)
    client = FakeInference([_reply("ear-cup (over the ear)", r"over[- ]?ear", "high")])

    await _review(db_session, client)

    assert db_session.query(AspectKeyword).one().aspect_value == "Ear-Cup (Over the Ear)"


@pytest.mark.asyncio
async def test_invalid_regex_is_not_promoted(db_session):
    miss = _miss(db_session)
    client = FakeInference([_reply("Over-Ear", r"over[- ear", "high")])

    summary = await _review(db_session, client)

    assert summary.review_needed == 1
    assert db_session.query(AspectKeyword).count() == 0
    db_session.refresh(miss)
    assert "not a valid regex" in miss.notes


@pytest.mark.asyncio
async def test_existing_pattern_is_kept_and_miss_processed(db_session):
    db_session.add(AspectKeyword(
        aspect_name="Type", keyword_pattern=r"over[- ]?ear", aspect_value="Over-Ear", category_id="112529",
    ))
    db_session.commit()
    miss = _miss(db_session)
    client = FakeInference([_reply("Over The Ear", r"over[- ]?ear", "high")])

    summary = await _review(db_session, client)

    assert summary.processed == 1
    row = db_session.query(AspectKeyword).one()
    assert row.aspect_value == "Over-Ear"
    miss = db_session.get(AspectMiss, miss.id)
    assert miss.status == "processed"
    assert miss.notes == "Pattern already existed"


def test_insert_keyword_pattern_treats_null_category_as_value(db_session):
    assert insert_keyword_pattern(
        db_session, aspect_name="Color", keyword_pattern=r"\bblack\b", aspect_value="Black", category_id=None,
    )
    db_session.commit()

    assert not insert_keyword_pattern(
        db_session, aspect_name="Color", keyword_pattern=r"\bblack\b", aspect_value="Noir", category_id=None,
    )
    assert insert_keyword_pattern(
        db_session, aspect_name="Color", keyword_pattern=r"\bblack\b", aspect_value="Black", category_id="112529",
    )
    db_session.commit()

    assert db_session.query(AspectKeyword).count() == 2


@pytest.mark.asyncio
async def test_empty_queue_returns_zero_summary(db_session):
    summary = await _review(db_session, FakeInference())

    assert summary.as_dict() == {"processed": 0, "reviewNeeded": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_zero_limit_reviews_nothing(db_session):
    _miss(db_session)
    client = FakeInference(default=_reply("Over-Ear", r"over[- ]?ear", "high"))

    summary = await review_pending(db_session, 0, client=client, max_attempts=3, item_delay=0)

    assert summary.as_dict() == {"processed": 0, "reviewNeeded": 0, "skipped": 0}
    assert client.prompts == []
    assert db_session.query(AspectMiss).filter_by(status="pending").count() == 1
