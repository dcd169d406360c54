import logging

from extensions.logging import LoggingExtension


def test_records_are_tagged_with_current_color(tmp_path):
    log_file = tmp_path / "run.log"
    ext = LoggingExtension(log_file, console_level=logging.WARNING, file_level=logging.INFO)
    try:
        log = logging.getLogger("enricher.test")
        log.info("outside")
        token = ext.set_entity_context("19-4052 TCX")
        assert LoggingExtension.current_entity() == "19-4052 TCX"
        log.info("inside")
        ext.reset_entity_context(token)
        log.debug("dropped by level")
    finally:
        ext.close()

    text = log_file.read_text(encoding="utf-8")
    assert "[-] outside" in text
    assert "[19-4052 TCX] inside" in text
    assert "dropped by level" not in text
    assert LoggingExtension.current_entity() is None
