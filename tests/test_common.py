#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. Duration parsing and formatting
2. Message trimming
3. retry_call attempt and exception handling
4. wait_until polling, timeout and cancellation
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from common import (
    MAX_MESSAGE_LENGTH,
    format_duration,
    format_time,
    parse_duration,
    parse_time,
    retry_call,
    trim_message,
    wait_until,
)


class TestParseDuration:
    """Test parse_duration."""

    @pytest.mark.parametrize('text,expected', [
        ('15s', timedelta(seconds=15)),
        ('1m', timedelta(minutes=1)),
        ('1h30m', timedelta(hours=1, minutes=30)),
        ('500ms', timedelta(milliseconds=500)),
        ('1.5h', timedelta(minutes=90)),
        ('0', timedelta(0)),
        ('-2s', timedelta(seconds=-2)),
    ])
    def test_valid(self, text, expected):
        assert parse_duration(text) == expected

    def test_numbers_are_seconds(self):
        """Bare numbers from YAML are seconds."""
        assert parse_duration(30) == timedelta(seconds=30)
        assert parse_duration(0.5) == timedelta(milliseconds=500)

    def test_empty_is_none(self):
        assert parse_duration(None) is None
        assert parse_duration('') is None

    def test_timedelta_passthrough(self):
        assert parse_duration(timedelta(minutes=2)) == timedelta(minutes=2)

    @pytest.mark.parametrize('text', ['abc', '10', '5 m', '1d', 'm'])
    def test_invalid(self, text):
        with pytest.raises(ValueError, match='invalid duration'):
            parse_duration(text)


class TestFormatDuration:
    """Test format_duration."""

    @pytest.mark.parametrize('delta,expected', [
        (timedelta(0), '0s'),
        (timedelta(seconds=15), '15s'),
        (timedelta(minutes=5), '5m'),
        (timedelta(hours=1, minutes=2, seconds=3), '1h2m3s'),
        (timedelta(seconds=-90), '-1m30s'),
    ])
    def test_format(self, delta, expected):
        assert format_duration(delta) == expected

    def test_none(self):
        assert format_duration(None) == ''


class TestTimes:
    """Test RFC 3339 time helpers."""

    def test_format_time(self):
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_time(value) == '2024-01-02T03:04:05Z'
        assert format_time(None) is None

    def test_parse_time(self):
        assert parse_time('2024-01-02T03:04:05Z') == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_time('') is None

    def test_naive_is_utc(self):
        assert parse_time('2024-01-02T03:04:05').tzinfo == timezone.utc


class TestTrimMessage:
    """Test trim_message."""

    def test_short_message_unchanged(self):
        assert trim_message('hello') == 'hello'

    def test_long_message_marked(self):
        message = 'x' * (MAX_MESSAGE_LENGTH + 10)
        trimmed = trim_message(message)
        assert len(trimmed) == MAX_MESSAGE_LENGTH + 3
        assert trimmed.endswith('...')

    def test_custom_limit(self):
        assert trim_message('abcdef', limit=3) == 'abc...'


class TestRetryCall:
    """Test retry_call."""

    @patch('common.time.sleep')
    def test_returns_first_success(self, mock_sleep):
        func = MagicMock(return_value='ok')
        assert retry_call(func) == 'ok'
        func.assert_called_once()
        mock_sleep.assert_not_called()

    @patch('common.time.sleep')
    def test_retries_then_succeeds(self, mock_sleep):
        func = MagicMock(side_effect=[ConnectionError('down'), ConnectionError('down'), 'ok'])
        assert retry_call(func, attempts=3, interval=2.0) == 'ok'
        assert func.call_count == 3
        mock_sleep.assert_called_with(2.0)

    @patch('common.time.sleep')
    def test_reraises_last_error(self, mock_sleep):
        func = MagicMock(side_effect=ConnectionError('down'))
        with pytest.raises(ConnectionError):
            retry_call(func, attempts=2)
        assert func.call_count == 2

    @patch('common.time.sleep')
    def test_unlisted_error_not_retried(self, mock_sleep):
        """Errors outside retry_on propagate on the first attempt."""
        func = MagicMock(side_effect=KeyError('missing'))
        with pytest.raises(KeyError):
            retry_call(func, attempts=5, retry_on=(ConnectionError,))
        func.assert_called_once()


class TestWaitUntil:
    """Test wait_until polling."""

    @patch('common.time.sleep')
    def test_returns_true_when_predicate_passes(self, mock_sleep):
        predicate = MagicMock(side_effect=[False, False, True])
        assert wait_until(predicate, interval=1.0) is True
        assert predicate.call_count == 3
        assert mock_sleep.call_count == 2

    @patch('common.time.sleep')
    @patch('common.time.time')
    def test_timeout(self, mock_time, mock_sleep):
        mock_time.side_effect = [0, 5, 11]
        assert wait_until(lambda: False, timeout=10, interval=5) is False

    @patch('common.time.sleep')
    def test_cancelled(self, mock_sleep):
        assert wait_until(lambda: False, cancelled=lambda: True) is False
        mock_sleep.assert_not_called()
