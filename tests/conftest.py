"""Shared fixtures for the SiteCheck test suite.

Clears per-thread trace state and the process-wide health monitor between
tests, and provides a ~111 m square parcel near the equator so distances
in degrees convert to meters without a latitude correction.
"""

import pytest

import health_monitor
from sc_trace import clear_trace

# 0.001 deg ~ 111.3 m at this latitude
SQUARE_PARCEL = [(0.0, 0.0), (0.0, 0.001), (0.001, 0.001), (0.001, 0.0)]


@pytest.fixture(autouse=True)
def _clean_state():
    clear_trace()
    health_monitor.reset()
    yield
    clear_trace()
    health_monitor.reset()


@pytest.fixture
def square_parcel():
    return list(SQUARE_PARCEL)
