"""Local test harness serving extracted simulator builds."""

from lvgl_sim_builder.harness.ports import PortUnavailableError, find_available_port
from lvgl_sim_builder.harness.server import PortLease, TestHarness, cache_busting_url

__all__ = [
    "PortLease",
    "PortUnavailableError",
    "TestHarness",
    "cache_busting_url",
    "find_available_port",
]
