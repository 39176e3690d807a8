"""
Tests for retry backoff calculation.
"""

from unittest.mock import patch

import pytest

from credential_broker.utils.retry_utils import calculate_exponential_backoff


class TestCalculateExponentialBackoff:
    """Test exponential backoff with and without jitter."""

    @pytest.mark.parametrize("retry_count, expected", [(0, 30), (1, 60), (2, 120), (5, 960), (6, 1800), (10, 1800)])
    def test_without_jitter(self, retry_count, expected):
        """Delays double from the base and stop at the maximum."""
        delay = calculate_exponential_backoff(retry_count, base_delay=30, max_delay=1800, jitter=False)
        assert delay == expected

    def test_negative_retry_count(self):
        """A negative count falls back to the base delay."""
        assert calculate_exponential_backoff(-1, base_delay=30) == 30

    def test_jitter_bounds(self):
        """Jitter stays within 25% and never leaves [base, max]."""
        for retry_count in range(8):
            delay = calculate_exponential_backoff(retry_count, base_delay=30, max_delay=1800)
            nominal = min(30 * 2**retry_count, 1800)
            assert 30 <= delay <= 1800
            assert nominal * 0.75 - 1 <= delay <= nominal * 1.25

    @patch("credential_broker.utils.retry_utils.random.uniform", return_value=-100.0)
    def test_jitter_never_below_base(self, mock_uniform):
        """Negative jitter cannot push the delay under the base."""
        assert calculate_exponential_backoff(0, base_delay=30, max_delay=1800) == 30
