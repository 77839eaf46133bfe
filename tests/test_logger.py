# tests/test_logger.py
"""Tests for the component tag column in log output."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import logging
from chargequeue.utils.logger import ComponentFilter, get_logger


def make_record(msg, name="chargequeue.services.queue_service"):
    return logging.LogRecord(name, logging.INFO, __file__, 1, msg, None, None)


class TestComponentFilter:
    def test_leading_tag_becomes_component(self):
        record = make_record("[QUEUE] A joined station 1 at position 1")

        assert ComponentFilter().filter(record)
        assert record.component == "QUEUE"
        assert record.getMessage() == "A joined station 1 at position 1"

    def test_untagged_message_uses_module_name(self):
        record = make_record("plain message", name="chargequeue.services.maintenance")

        ComponentFilter().filter(record)

        assert record.component == "MAINTENANCE"
        assert record.getMessage() == "plain message"

    def test_second_handler_sees_same_record(self):
        record = make_record("[SESSION] started")
        components = ComponentFilter()
        components.filter(record)
        components.filter(record)

        assert record.component == "SESSION"
        assert record.getMessage() == "started"


class TestGetLogger:
    def test_client_libraries_held_at_warning(self):
        get_logger(__name__)
        assert logging.getLogger("httpx").level == logging.WARNING
