"""Shared pytest fixtures for the Besu testnet test-suite."""
from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import besu_logging
import config
from app.container import ServiceContainer
from tests.fakes import FakeChain, InMemoryRuntime, SleepRecorder


@pytest.fixture(scope="session", autouse=True)
def test_environment() -> Iterator[None]:
    """Ensure tests run with the dedicated 'test' configuration and logging."""
    original_env = os.environ.get("BESU_ENV")
    os.environ["BESU_ENV"] = "test"

    config.reload_settings(env="test")
    besu_logging.configure(config.LOGGING, force=True)

    yield

    if original_env is None:
        os.environ.pop("BESU_ENV", None)
        config.reload_settings(env="development")
    else:
        os.environ["BESU_ENV"] = original_env
        config.reload_settings(env=original_env)


@pytest.fixture()
def test_settings(tmp_path) -> config.Settings:
    return config.load_settings(env="test", overrides={"network": {"data_root": str(tmp_path / "networks")}})


@pytest.fixture()
def runtime() -> InMemoryRuntime:
    return InMemoryRuntime()


@pytest.fixture()
def chain(runtime) -> FakeChain:
    fake_chain = FakeChain()
    runtime.on_start = fake_chain.container_started
    return fake_chain


@pytest.fixture()
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def services(test_settings, runtime, chain, sleeper) -> ServiceContainer:
    return ServiceContainer.build(
        settings=test_settings,
        overrides={"runtime": runtime, "rpc_factory": chain.client, "sleep": sleeper},
    )


@pytest.fixture()
def orchestrator(services):
    return services.orchestrator
