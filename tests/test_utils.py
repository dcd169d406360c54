# tests/test_utils.py
import json
import re
import pytest

from enricher import utils


def test_normalize_color_rgb_and_hex():
    assert utils.normalize_color("rgb(255, 0, 128)") == "#FF0080"
    assert utils.normalize_color("rgba(0, 0, 0, 0.5)") == "#000000"
    assert utils.normalize_color("#1a2b3c") == "#1A2B3C"
    assert utils.normalize_color("#abc") == "#AABBCC"
    assert utils.normalize_color("ffbe98") == "#FFBE98"
    assert utils.normalize_color("rgba(15, 76, 129, 50%)") == "#0F4C81"
    assert utils.normalize_color("  #00ff00 ") == "#00FF00"


def test_normalize_color_rejects_garbage():
    assert utils.normalize_color(None) is None
    assert utils.normalize_color("") is None
    assert utils.normalize_color("transparent") is None
    assert utils.normalize_color("rgb(300, 0, 0)") is None


def test_normalize_color_requires_the_whole_value_to_match():
    assert utils.normalize_color("rgba(0, 0, 0, 0)") is None
    assert utils.normalize_color("rgba(0, 0, 0, 0.0)") is None
    assert utils.normalize_color("rgba(0, 0, 0, 0%)") is None
    assert utils.normalize_color("abc") is None
    assert utils.normalize_color("#1234567") is None
    assert utils.normalize_color("#12345") is None
    assert utils.normalize_color("url(abc.png)") is None
    assert utils.normalize_color("rgb(1, 2, 3) url(x.png)") is None


def test_is_valid_hex():
    assert utils.is_valid_hex("#A1B2C3")
    assert not utils.is_valid_hex("#a1b2c3")      # lowercase is not canonical
    assert not utils.is_valid_hex("A1B2C3")
    assert not utils.is_valid_hex("#ABC")
    assert not utils.is_valid_hex(None)


def test_file_timestamp_shape():
    ts = utils.file_timestamp()
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z", ts)
    assert ":" not in ts


def test_parse_iso_roundtrip_and_bad_input():
    dt = utils.parse_iso(utils.iso_now())
    assert dt is not None and dt.tzinfo is not None
    assert utils.parse_iso("yesterday") is None
    assert utils.parse_iso(None) is None


def test_atomic_write_json_and_read(tmp_path):
    p = tmp_path / "nested" / "out.json"
    utils.atomic_write_json(p, {"b": 1, "a": [1, 2]})
    assert utils.read_json(p) == {"b": 1, "a": [1, 2]}
    # indent=2, key order preserved
    text = p.read_text(encoding="utf-8")
    assert text.index('"b"') < text.index('"a"')
    assert text.endswith("\n")
    # no temp files left behind
    assert [x.name for x in p.parent.iterdir()] == ["out.json"]


def test_prune_files_keeps_newest(tmp_path):
    for i in range(5):
        (tmp_path / f"checkpoint_backup_2024-01-0{i + 1}.json").write_text("{}")
    (tmp_path / "other.json").write_text("{}")

    removed = utils.prune_files(tmp_path, "checkpoint_backup_*.json", keep=2)

    assert len(removed) == 3
    left = sorted(p.name for p in tmp_path.glob("checkpoint_backup_*.json"))
    assert left == ["checkpoint_backup_2024-01-04.json", "checkpoint_backup_2024-01-05.json"]
    assert (tmp_path / "other.json").exists()


def test_getenv_helpers(monkeypatch):
    monkeypatch.setenv("X_INT", "42")
    monkeypatch.setenv("X_BAD", "forty")
    monkeypatch.setenv("X_BOOL", "Yes")
    monkeypatch.setenv("X_CSV", "a, b,,c")
    monkeypatch.setenv("X_BLANK", "   ")

    assert utils.getenv_int("X_INT", 1, 0, 10) == 10
    assert utils.getenv_int("X_BAD", 7) == 7
    assert utils.getenv_bool("X_BOOL", False) is True
    assert utils.getenv_csv("X_CSV", "") == ("a", "b", "c")
    assert utils.getenv_str("X_BLANK", "dflt") == "dflt"


@pytest.mark.asyncio
async def test_retry_fixed_async_retries_then_succeeds():
    calls = {"n": 0}

    @utils.retry_fixed_async(3, 0, label="flaky")
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("boom")
        return "ok"

    assert await flaky() == "ok"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_retry_fixed_async_respects_predicate():
    calls = {"n": 0}

    @utils.retry_fixed_async(5, 0, retry_when=lambda e: "transient" in str(e))
    async def fatal():
        calls["n"] += 1
        raise RuntimeError("fatal")

    with pytest.raises(RuntimeError):
        await fatal()
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_retry_async_only_retries_listed_types():
    calls = {"n": 0}

    @utils.retry_async(3, 0, 0, 0, retry_on=(OSError,))
    async def bad():
        calls["n"] += 1
        raise ValueError("not an io error")

    with pytest.raises(ValueError):
        await bad()
    assert calls["n"] == 1
