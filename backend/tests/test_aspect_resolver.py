import pytest

from autolister.models_sqlalchemy.models import AspectKeyword, AspectMiss, CategoryAspectRequirement
from autolister.services.aspect_resolver import (
    SOURCE_CATEGORY_PATTERN,
    SOURCE_PROVIDER,
    SOURCE_STATIC_DEFAULT,
    SOURCE_UNIVERSAL_PATTERN,
    AspectResolver,
    record_misses,
)
from autolister.services.ebay_api_client import CategoryAspect, TaxonomyApiError
from autolister.services.keepa_client import ProductData

from conftest import fake_token


def _require(db, category_id, *names, optional=()):
    for name in names:
        db.add(CategoryAspectRequirement(category_id=category_id, aspect_name=name, required=True))
    for name in optional:
        db.add(CategoryAspectRequirement(category_id=category_id, aspect_name=name, required=False))
    db.commit()


def _pattern(db, aspect, pattern, value, category_id=None):
    db.add(AspectKeyword(aspect_name=aspect, keyword_pattern=pattern, aspect_value=value, category_id=category_id))
    db.commit()


def _resolver(db, **kwargs):
    async def no_fetch(token, category_id):
        raise AssertionError("requirements should come from the database")

    kwargs.setdefault("fetch_aspects", no_fetch)
    return AspectResolver(db, get_token=fake_token, **kwargs)


@pytest.mark.asyncio
async def test_category_pattern_beats_universal_pattern(db_session, headphones):
    _require(db_session, "112529", "Type")
    # Universal pattern inserted first so ordering alone would pick it.
    _pattern(db_session, "Type", r"headphones", "Universal Type")
    _pattern(db_session, "Type", r"over-ear|over ear", "Ear-Cup (Over the Ear)", category_id="112529")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Type"] == ["Ear-Cup (Over the Ear)"]
    assert result.sources["Type"] == SOURCE_CATEGORY_PATTERN
    assert result.misses == []


@pytest.mark.asyncio
async def test_first_category_pattern_wins_among_category_patterns(db_session, headphones):
    _require(db_session, "112529", "Features")
    _pattern(db_session, "Features", r"noise", "Noise Cancellation", category_id="112529")
    _pattern(db_session, "Features", r"bluetooth", "Bluetooth", category_id="112529")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Features"] == ["Noise Cancellation"]


@pytest.mark.asyncio
async def test_pattern_for_other_category_is_ignored(db_session, headphones):
    _require(db_session, "112529", "Platform")
    _pattern(db_session, "Platform", r"wireless", "Sony PlayStation 5", category_id="139973")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert "Platform" not in result.aspects
    assert result.misses == ["Platform"]


@pytest.mark.asyncio
async def test_universal_pattern_used_when_no_category_pattern(db_session, headphones):
    _require(db_session, "112529", "Connectivity")
    _pattern(db_session, "Connectivity", r"wireless|bluetooth|bt\b", "Wireless")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Connectivity"] == ["Wireless"]
    assert result.sources["Connectivity"] == SOURCE_UNIVERSAL_PATTERN


@pytest.mark.asyncio
async def test_pattern_match_is_case_insensitive(db_session, headphones):
    _require(db_session, "112529", "Color")
    _pattern(db_session, "Color", r"\bBLACK\b", "Black")

    result = await _resolver(db_session).resolve("112529", ProductData(asin="B0TEST0002", title="acme headphones black"))

    assert result.aspects["Color"] == ["Black"]


@pytest.mark.asyncio
async def test_invalid_pattern_is_skipped(db_session, headphones):
    _require(db_session, "112529", "Type")
    _pattern(db_session, "Type", r"over-ear(", "Broken")
    _pattern(db_session, "Type", r"over-ear", "Ear-Cup (Over the Ear)")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Type"] == ["Ear-Cup (Over the Ear)"]


@pytest.mark.asyncio
async def test_provider_fields_then_static_default(db_session, headphones):
    _require(db_session, "112529", "Brand", "MPN", "Connectivity")

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Brand"] == ["Acme"]
    assert result.aspects["MPN"] == ["AC100-BLK"]
    assert result.sources["Brand"] == SOURCE_PROVIDER
    assert result.aspects["Connectivity"] == ["Wireless"]
    assert result.sources["Connectivity"] == SOURCE_STATIC_DEFAULT


@pytest.mark.asyncio
async def test_static_defaults_are_injectable(db_session, headphones):
    _require(db_session, "999", "Style")

    result = await _resolver(db_session, static_defaults={"999": {"Style": "Modern"}}).resolve("999", headphones)

    assert result.aspects["Style"] == ["Modern"]


@pytest.mark.asyncio
async def test_unresolved_required_aspect_is_recorded_as_miss(db_session, headphones):
    _require(db_session, "112529", "Type", "Ear Piece Design")

    result = await _resolver(db_session).resolve("112529", headphones, category_name="Headphones")

    assert set(result.misses) == {"Type", "Ear Piece Design"}
    misses = db_session.query(AspectMiss).order_by(AspectMiss.id).all()
    assert [m.aspect_name for m in misses] == ["Type", "Ear Piece Design"]
    miss = misses[0]
    assert miss.asin == "B0TEST0001"
    assert miss.category_id == "112529"
    assert miss.category_name == "Headphones"
    assert miss.status == "pending"
    assert miss.keepa_brand == "Acme"
    assert miss.keepa_model == "AC-100"
    assert miss.product_title == headphones.title
    # Provider identifiers are still sent even though some aspects missed.
    assert result.aspects["Brand"] == ["Acme"]


@pytest.mark.asyncio
async def test_repeat_resolution_does_not_duplicate_pending_misses(db_session, headphones):
    _require(db_session, "112529", "Type")

    await _resolver(db_session).resolve("112529", headphones)
    await _resolver(db_session).resolve("112529", headphones)

    assert db_session.query(AspectMiss).count() == 1


@pytest.mark.asyncio
async def test_optional_aspects_never_create_misses(db_session, headphones):
    _require(db_session, "112529", optional=("Style", "Color"))

    result = await _resolver(db_session).resolve("112529", headphones)

    assert result.aspects["Color"] == ["Black"]
    assert "Style" not in result.aspects
    assert result.misses == []
    assert db_session.query(AspectMiss).count() == 0


@pytest.mark.asyncio
async def test_requirements_are_synced_when_unknown(db_session, headphones):
    fetched = []

    async def fetch(token, category_id):
        fetched.append((token, category_id))
        return [
            CategoryAspect("Brand", True),
            CategoryAspect("Type", True, "SELECTION_ONLY", ["Ear-Cup (Over the Ear)", "Earbud (In Ear)"]),
            CategoryAspect("Style", False),
        ]

    result = await AspectResolver(db_session, get_token=fake_token, fetch_aspects=fetch).resolve("112529", headphones)

    assert fetched == [("test-token", "112529")]
    assert result.required == ["Brand", "Type"]
    rows = db_session.query(CategoryAspectRequirement).filter_by(category_id="112529").all()
    assert {r.aspect_name for r in rows} == {"Brand", "Type", "Style"}
    type_row = next(r for r in rows if r.aspect_name == "Type")
    assert type_row.aspect_mode == "SELECTION_ONLY"
    assert type_row.allowed_values == ["Ear-Cup (Over the Ear)", "Earbud (In Ear)"]

    # Second run reads from the database.
    await AspectResolver(db_session, get_token=fake_token, fetch_aspects=fetch).resolve("112529", headphones)
    assert len(fetched) == 1


@pytest.mark.asyncio
async def test_requirement_fetch_failure_degrades_to_provider_aspects(db_session, headphones):
    async def fetch(token, category_id):
        raise TaxonomyApiError("HTTP 503")

    result = await AspectResolver(db_session, get_token=fake_token, fetch_aspects=fetch).resolve("112529", headphones)

    assert result.aspects["Brand"] == ["Acme"]
    assert result.misses == []


def test_record_misses_skips_existing_pending(db_session, headphones):
    first = record_misses(db_session, asin="B0TEST0001", category_id="112529", category_name="Headphones",
                          aspect_names=["Type"], product=headphones)
    second = record_misses(db_session, asin="B0TEST0001", category_id="112529", category_name="Headphones",
                           aspect_names=["Type", "Model"], product=headphones)

    assert len(first) == 1
    assert [m.aspect_name for m in second] == ["Model"]
