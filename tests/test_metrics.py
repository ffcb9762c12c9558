"""Tests for operation metrics."""

import pytest
from prometheus_client import REGISTRY

from addon_operator.metrics import ADDON_DURATION, record_duration


def sample_count(name: str, status: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "addon_operator_addon_duration_seconds_count",
            {"name": name, "operation": "install", "status": status},
        )
        or 0.0
    )


def test_record_duration_pass() -> None:
    """Test a block that completes is recorded as passed."""
    before = sample_count("metrics-pass", "pass")
    with record_duration(ADDON_DURATION, "metrics-pass", "install"):
        pass
    assert sample_count("metrics-pass", "pass") == before + 1
    assert sample_count("metrics-pass", "fail") == 0


def test_record_duration_fail() -> None:
    """Test a block that raises is recorded as failed and the error propagates."""
    before = sample_count("metrics-fail", "fail")
    with pytest.raises(ValueError):
        with record_duration(ADDON_DURATION, "metrics-fail", "install"):
            raise ValueError("boom")
    assert sample_count("metrics-fail", "fail") == before + 1
    assert sample_count("metrics-fail", "pass") == 0
