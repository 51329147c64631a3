"""Configure pytest fixtures for the LINAC emulator tests."""

import asyncio

import pytest

from linacsim.core.config import SimulationConfig, ToleranceConfig, reset_settings
from linacsim.data.broadcast import InMemoryBroadcastHub
from linacsim.data.scenario_loader import parse_scenario
from linacsim.data.shared_state import InMemoryStore, SharedStateChannel
from sample_data import SAMPLE_SCENARIO


@pytest.fixture(autouse=True)
def fresh_settings():
    """Re-read the environment for every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def sim_config():
    return SimulationConfig()


@pytest.fixture
def tolerance_config():
    return ToleranceConfig()


@pytest.fixture
def scenario():
    return parse_scenario(SAMPLE_SCENARIO, source="data/A1_noErrors.json")


@pytest.fixture
def no_sleep():
    """Sleep replacement that yields to the loop without waiting."""

    async def _sleep(_seconds):
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def channel_pair():
    """Two displays sharing one store and one broadcast bus."""
    backing = {}
    hub = InMemoryBroadcastHub()
    console_side = SharedStateChannel(InMemoryStore(backing), hub.connect())
    imaging_side = SharedStateChannel(InMemoryStore(backing), hub.connect())
    yield console_side, imaging_side
    console_side.close()
    imaging_side.close()
