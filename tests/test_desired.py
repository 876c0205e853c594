from __future__ import annotations

import pytest
from conftest import make_spec

from nodeward.api import Instance
from nodeward.reconciler import clamp, compute_desired, is_ready

pytestmark = [pytest.mark.unit]


@pytest.mark.parametrize("current,pending,expected", [
    (0, 0, 1),
    (3, 0, 1),
    (5, 9, 1),
])
def test_without_autoscaling_desired_is_min(current: int, pending: int, expected: int):
    assert compute_desired(make_spec(min_nodes=1, max_nodes=5), current, pending) == expected


@pytest.mark.parametrize("target,expected", [(3, 3), (9, 5), (1, 2)])
def test_target_overrides_and_is_clamped(target: int, expected: int):
    spec = make_spec(min_nodes=2, max_nodes=5, target_nodes=target, auto_scaling_enabled=True)
    assert compute_desired(spec, current=4, pending=100) == expected


@pytest.mark.parametrize("current,pending,threshold,expected", [
    (0, 1, 1, 2),   # 0 + 1 clamped up to min
    (3, 1, 1, 4),   # grow by one
    (5, 7, 1, 5),   # capped at max
    (3, 2, 3, 3),   # below threshold: steady
    (3, 0, 1, 2),   # idle: shrink by one
    (2, 0, 1, 2),   # idle at min: steady
])
def test_autoscaling_steps_by_one(current: int, pending: int, threshold: int, expected: int):
    spec = make_spec(min_nodes=2, max_nodes=5, auto_scaling_enabled=True, scale_up_threshold=threshold)
    assert compute_desired(spec, current, pending) == expected


def test_scale_down_threshold_is_not_consulted():
    a = make_spec(min_nodes=0, max_nodes=5, auto_scaling_enabled=True, scale_down_threshold=0)
    b = make_spec(min_nodes=0, max_nodes=5, auto_scaling_enabled=True, scale_down_threshold=50)
    assert compute_desired(a, 3, 0) == compute_desired(b, 3, 0) == 2


def test_clamp():
    spec = make_spec(min_nodes=2, max_nodes=4)
    assert [clamp(spec, n) for n in (0, 3, 10)] == [2, 3, 4]


@pytest.mark.parametrize("status,ready", [
    ("running", True), ("ACTIVE", True), ("initializing", False), ("BUILD", False), ("off", False),
])
def test_ready_statuses(status: str, ready: bool):
    assert is_ready(Instance(id="1", name="n", status=status)) is ready
