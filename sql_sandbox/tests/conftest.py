"""Pytest configuration and fixtures for sql_sandbox tests."""

from __future__ import annotations

from typing import Generator

import pytest
from prometheus_client import CollectorRegistry

from sql_sandbox.application import Sandbox
from sql_sandbox.domain.services import Catalog, LockManager, MVCCTransactionManager, StorageEngine
from sql_sandbox.infrastructure.config import Config, EngineConfig
from sql_sandbox.infrastructure.container import Container, reset_container
from sql_sandbox.infrastructure.metrics import MetricsRegistry


@pytest.fixture
def test_config() -> Config:
    """Provide a configuration independent of the environment."""
    return Config(engine=EngineConfig(max_trigger_depth=8, max_recursion=50))


@pytest.fixture
def container() -> Generator[Container, None, None]:
    """Provide a fresh DI container for each test."""
    reset_container()
    c = Container()
    yield c
    c.clear()


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    # Use a separate registry to avoid conflicts between tests
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def sandbox(test_config: Config, metrics_registry: MetricsRegistry) -> Generator[Sandbox, None, None]:
    """Provide a started sandbox."""
    with Sandbox(config=test_config, metrics=metrics_registry) as sb:
        yield sb


@pytest.fixture
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture
def storage() -> StorageEngine:
    return StorageEngine(LockManager())


@pytest.fixture
def txn_manager(catalog: Catalog, storage: StorageEngine) -> MVCCTransactionManager:
    return MVCCTransactionManager(catalog, storage)


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
