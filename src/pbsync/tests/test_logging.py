"""Tests for the pbsync logger tree."""

import logging

import pytest

from pbsync.utils.logging import ROOT_LOGGER, get_logger, set_log_level


@pytest.fixture
def restore_level():
    root = logging.getLogger(ROOT_LOGGER)
    level = root.level
    yield
    root.setLevel(level)


class TestLogging:
    def test_single_handler_on_root(self):
        first = get_logger("pbsync.transfer")
        second = get_logger("pbsync.pipeline.sync")
        root = logging.getLogger(ROOT_LOGGER)

        assert len(root.handlers) == 1
        assert first.handlers == [] and second.handlers == []
        assert first.propagate and second.propagate

    def test_foreign_names_nested_under_root(self):
        assert get_logger("helpers").name == "pbsync.helpers"
        assert get_logger("pbsync").name == "pbsync"

    def test_set_log_level_reaches_module_loggers(self, restore_level):
        logger = get_logger("pbsync.credentials")
        set_log_level("DEBUG")
        assert logger.isEnabledFor(logging.DEBUG)
        set_log_level("warning")
        assert not logger.isEnabledFor(logging.INFO)
