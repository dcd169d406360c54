import pytest

from components.entity_loader import Entity
from enricher.errors import ErrorKind, RecoveryAction
from enricher.extractor import ColorExtractor
from enricher.session import SessionOps

from stubs import StubPage

CODE = "19-4052 TCX"


def _entity(**kw):
    return Entity(identifier=CODE, display_name="Classic Blue", **kw)


@pytest.mark.asyncio
async def test_extract_normalizes_rgb_to_hex(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={CODE: "rgb(15, 76, 129)"})
    result = await ColorExtractor(cfg).extract_detailed(_entity(), SessionOps(page, cfg))

    assert result.ok
    assert result.entity.enriched_value == "#0F4C81"
    assert result.entity.last_updated is not None
    assert result.entity.display_name == "Classic Blue"
    # search flow: open page, type the prefixed code, submit
    assert page.calls[0][0] == "goto"
    assert page.typed == f"PANTONE {CODE}"
    assert ("click", "button[type='submit']") in page.calls


@pytest.mark.asyncio
async def test_missing_swatch_returns_original_entity(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={})
    before = _entity(enriched_value="#111111")

    result = await ColorExtractor(cfg).extract_detailed(before, SessionOps(page, cfg))

    assert result.entity is before
    assert result.error_kind is ErrorKind.ELEMENT_NOT_FOUND
    assert result.action is RecoveryAction.SKIP_CURRENT
    # two planned retries before giving up
    assert sum(1 for c in page.calls if c[0] == "evaluate") == 3


@pytest.mark.asyncio
async def test_single_attempt_when_retry_disabled(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={})
    entity = await ColorExtractor(cfg).extract(_entity(), SessionOps(page, cfg), retry=False)

    assert entity.enriched_value == ""
    assert sum(1 for c in page.calls if c[0] == "evaluate") == 1


@pytest.mark.asyncio
async def test_unparsable_color_is_skipped_without_retry(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={CODE: "transparent"})
    result = await ColorExtractor(cfg).extract_detailed(_entity(), SessionOps(page, cfg))

    assert result.error_kind is ErrorKind.DATA_VALIDATION
    assert not result.ok
    assert sum(1 for c in page.calls if c[0] == "evaluate") == 1


@pytest.mark.asyncio
async def test_transparent_swatch_is_not_recorded_as_black(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={CODE: "rgba(0, 0, 0, 0)"})
    result = await ColorExtractor(cfg).extract_detailed(_entity(), SessionOps(page, cfg))

    assert not result.ok
    assert result.error_kind is ErrorKind.DATA_VALIDATION
    assert result.entity.enriched_value == ""


@pytest.mark.asyncio
async def test_crashed_session_asks_for_a_new_one(make_cfg):
    cfg = make_cfg(nav_attempts=3)
    page = StubPage(goto_errors=[RuntimeError("Browser has been closed")] * 3)
    result = await ColorExtractor(cfg).extract_detailed(_entity(), SessionOps(page, cfg))

    assert result.error_kind is ErrorKind.SESSION_CRASH
    assert result.needs_new_session
    assert result.entity.enriched_value == ""


@pytest.mark.asyncio
async def test_stop_request_suppresses_retries(make_cfg):
    cfg = make_cfg()
    page = StubPage(color={})
    extractor = ColorExtractor(cfg, should_stop=lambda: True)
    result = await extractor.extract_detailed(_entity(), SessionOps(page, cfg))

    assert not result.ok
    assert sum(1 for c in page.calls if c[0] == "evaluate") == 1


def test_query_uses_prefix(make_cfg):
    assert ColorExtractor(make_cfg(query_prefix="")).query_for(_entity()) == CODE
    assert ColorExtractor(make_cfg()).query_for(_entity()) == f"PANTONE {CODE}"
