"""
Tests for signaldesk.logging — level names from settings.
"""

import logging

from signaldesk.logging import level_from_name


def test_standard_names():
    assert level_from_name("DEBUG") == logging.DEBUG
    assert level_from_name("warning") == logging.WARNING
    assert level_from_name("Critical") == logging.CRITICAL


def test_aliases_known_to_logging():
    assert level_from_name("WARN") == logging.WARNING
    assert level_from_name("FATAL") == logging.CRITICAL
    assert level_from_name("NOTSET") == logging.NOTSET


def test_unknown_name_defaults_to_info():
    assert level_from_name("verbose") == logging.INFO
