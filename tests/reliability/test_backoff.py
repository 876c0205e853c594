from __future__ import annotations

import pytest

from nodeward.reliability import jittered_backoff, next_backoff

pytestmark = [pytest.mark.unit]


def test_jitter_lower_bound_is_one_eighth():
    assert jittered_backoff(4.0, 30.0, rand=lambda: 0.0) == 4.5


def test_jitter_upper_bound_is_one_quarter():
    assert jittered_backoff(4.0, 30.0, rand=lambda: 0.9999999) == pytest.approx(5.0, abs=1e-5)


@pytest.mark.parametrize("r", [0.0, 0.3, 0.7, 0.99])
def test_jitter_never_undershoots_backoff(r: float):
    assert 8.0 <= jittered_backoff(8.0, 60.0, rand=lambda: r) <= 10.0


def test_jitter_is_capped_at_max_backoff():
    assert jittered_backoff(40.0, 30.0, rand=lambda: 0.5) == 30.0
    assert jittered_backoff(28.0, 30.0, rand=lambda: 0.9) == 30.0


def test_next_backoff_grows_then_caps():
    assert next_backoff(1.0, 2.0, 30.0) == 2.0
    assert next_backoff(20.0, 2.0, 30.0) == 30.0
