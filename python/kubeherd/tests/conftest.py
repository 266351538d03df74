import pytest

from kubeherd.models.runtime import RuntimeConfig
from kubeherd.tests.fakes import FakeExecutor
from kubeherd.utils.clusterfile import ClusterFileStore


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def store(tmp_path) -> ClusterFileStore:
    return ClusterFileStore(str(tmp_path / "home"))


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(ssh_ready_retries=3, ssh_ready_delay=0)
