import pytest
from pydantic import ValidationError

from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import Cluster, Host
from kubeherd.models.runtime import ClusterImageMetadata, RuntimeConfig
from kubeherd.models.settings import KubeherdSettings
from kubeherd.models.ssh import SSHCredentials
from kubeherd.tests.fakes import make_cluster


def test_host_rejects_invalid_ip():
    with pytest.raises(ValidationError):
        Host(ips=["10.0.0.300"], roles=["master"])


def test_ssh_port_range():
    with pytest.raises(ValidationError):
        SSHCredentials(port=0)
    with pytest.raises(ValidationError):
        SSHCredentials(user="  ")


def test_master0_and_missing_master():
    cluster = make_cluster(masters=["10.0.0.5", "10.0.0.1"])
    assert cluster.master0_ip() == "10.0.0.5"
    with pytest.raises(ConfigurationError):
        Cluster().master0_ip()


def test_ensure_named():
    with pytest.raises(ConfigurationError):
        Cluster().ensure_named()


def test_wrap_shell_exports_env():
    cluster = make_cluster()
    cluster.spec.env = ["A=1", "B=two words", "broken", "A=3"]
    assert cluster.wrap_shell("bash init.sh") == "export A=3 B='two words' && bash init.sh"
    cluster.spec.env = []
    assert cluster.wrap_shell("bash init.sh") == "bash init.sh"


def test_metadata_accepts_camel_case_kube_version():
    meta = ClusterImageMetadata.model_validate({"version": "v1.22.8", "kubeVersion": "v1.22.9"})
    assert meta.kubernetes_version() == "v1.22.9"
    assert ClusterImageMetadata(version="v1.22.8").kubernetes_version() == "v1.22.8"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("KUBEHERD_SSH_READY_RETRIES", "10")
    monkeypatch.setenv("KUBEHERD_MAX_CONCURRENCY", "4")
    settings = KubeherdSettings()
    config = RuntimeConfig.from_settings(settings, force_delete=True)

    assert settings.command_timeout is None
    assert config.ssh_ready_retries == 10
    assert config.max_concurrency == 4
    assert config.force_delete
    assert config.remote_rootfs("demo") == "/var/lib/kubeherd/data/demo/rootfs"
