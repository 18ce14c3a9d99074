"""Tests for reconnect delay computation."""

from __future__ import annotations

import itertools

import pytest

from burrow.core.backoff import compute_delay


class TestComputeDelay:
    def test_doubles_without_jitter(self) -> None:
        delays = [compute_delay(a, base=1.0, cap=100.0) for a in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped(self) -> None:
        assert compute_delay(10, base=1.0, cap=30.0) == 30.0
        assert compute_delay(10, base=1.0, cap=30.0, jitter=1.0, rand=lambda: 0.99) == 30.0

    def test_huge_attempt_does_not_overflow(self) -> None:
        assert compute_delay(10_000, base=0.5, cap=60.0) == 60.0

    def test_jitter_bounds(self) -> None:
        low = compute_delay(2, base=1.0, cap=100.0, jitter=0.5, rand=lambda: 0.0)
        high = compute_delay(2, base=1.0, cap=100.0, jitter=0.5, rand=lambda: 0.999999)
        assert low == 4.0
        assert 4.0 <= high <= 6.0

    @pytest.mark.parametrize("jitter", [0.0, 0.3, 1.0])
    def test_monotone_for_any_draws(self, jitter: float) -> None:
        """Worst case: maximal draw at attempt n, minimal draw at n+1."""
        for attempt in range(12):
            hi = compute_delay(attempt, 0.5, 45.0, jitter, rand=lambda: 0.999999)
            lo_next = compute_delay(attempt + 1, 0.5, 45.0, jitter, rand=lambda: 0.0)
            assert hi <= lo_next
            assert hi <= 45.0

    def test_sequence_with_varied_draws(self) -> None:
        draws = itertools.cycle([0.9, 0.1, 0.5, 0.0, 0.7])
        delays = [compute_delay(a, 1.0, 20.0, 0.8, rand=lambda: next(draws)) for a in range(8)]
        assert delays == sorted(delays)
        assert max(delays) == 20.0

    def test_rejects_negative_attempt(self) -> None:
        with pytest.raises(ValueError):
            compute_delay(-1, 1.0, 10.0)

    def test_rejects_jitter_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            compute_delay(0, 1.0, 10.0, jitter=1.5)
