import asyncio
from typing import Dict, List, Optional

import pytest

from kubeherd.models.cluster import Host
from kubeherd.models.settings import KubeherdSettings
from kubeherd.models.ssh import SSHCredentials
from kubeherd.tests.fakes import make_cluster
from kubeherd.utils.async_command_runner import CommandError
from kubeherd.utils.ssh import RemoteExecutionFailed, SSHExecutor


class Recorder:
    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.calls: List[List[str]] = []
        self.envs: List[Optional[Dict[str, str]]] = []
        self.fail_on = fail_on

    async def __call__(self, argv, *, env=None, sensitive=False, timeout=None, **_):
        self.calls.append(list(argv))
        self.envs.append(env)
        if self.fail_on and any(self.fail_on in a for a in argv):
            raise CommandError("Command failed with exit code 1", 1, "boom")
        return "output"


@pytest.fixture
def recorder(monkeypatch) -> Recorder:
    rec = Recorder()
    monkeypatch.setattr("kubeherd.utils.ssh.run_command", rec)
    return rec


def _key_cluster():
    cluster = make_cluster(masters=["10.0.0.1"])
    cluster.spec.ssh = SSHCredentials(user="admin", pk="/keys/id_rsa", port=2222)
    return cluster


def test_run_with_key_uses_batch_mode(recorder):
    executor = SSHExecutor(_key_cluster())

    out = asyncio.run(executor.run("10.0.0.1", "hostname"))

    assert out == "output"
    argv = recorder.calls[0]
    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv
    assert argv[argv.index("-i") + 1] == "/keys/id_rsa"
    assert argv[argv.index("-p") + 1] == "2222"
    assert argv[-2:] == ["admin@10.0.0.1", "hostname"]
    assert recorder.envs[0] is None


def test_run_with_password_goes_through_sshpass(recorder):
    executor = SSHExecutor(make_cluster())

    asyncio.run(executor.run("10.0.0.1", "hostname"))

    argv = recorder.calls[0]
    assert argv[:3] == ["sshpass", "-e", "ssh"]
    assert "BatchMode=yes" not in argv
    assert "secret" not in argv
    assert recorder.envs[0] == {"SSHPASS": "secret"}


def test_host_group_credentials_override_default(recorder):
    cluster = make_cluster()
    cluster.spec.hosts.append(
        Host(ips=["10.0.0.9"], roles=["node"], ssh=SSHCredentials(user="ubuntu", pk="/k"))
    )
    executor = SSHExecutor(cluster)

    asyncio.run(executor.run("10.0.0.9", "true"))

    assert recorder.calls[0][-2] == "ubuntu@10.0.0.9"
    assert recorder.envs[0] is None


def test_copy_creates_parent_then_scp(recorder):
    executor = SSHExecutor(_key_cluster())

    asyncio.run(executor.copy("10.0.0.1", "/tmp/rootfs", "/var/lib/kubeherd/data/c/rootfs"))

    mkdir, scp = recorder.calls
    assert mkdir[-1] == "mkdir -p /var/lib/kubeherd/data/c"
    assert scp[0] == "scp"
    assert scp[scp.index("-P") + 1] == "2222"
    assert scp[-2:] == ["/tmp/rootfs", "admin@10.0.0.1:/var/lib/kubeherd/data/c/rootfs"]


def test_fetch_creates_local_parent(recorder, tmp_path):
    executor = SSHExecutor(_key_cluster())
    local = tmp_path / "c" / "admin.conf"

    asyncio.run(executor.fetch("10.0.0.1", "/etc/kubernetes/admin.conf", str(local)))

    assert local.parent.is_dir()
    assert recorder.calls[0][-2:] == [
        "admin@10.0.0.1:/etc/kubernetes/admin.conf",
        str(local),
    ]


def test_command_failure_carries_host(monkeypatch):
    monkeypatch.setattr("kubeherd.utils.ssh.run_command", Recorder(fail_on="kubeadm"))
    executor = SSHExecutor(make_cluster())

    with pytest.raises(RemoteExecutionFailed) as info:
        asyncio.run(executor.run("10.0.0.1", "kubeadm join"))

    assert info.value.host == "10.0.0.1"
    assert info.value.command == "kubeadm join"
    assert info.value.return_code == 1
    assert info.value.stderr == "boom"


def test_run_many_stops_at_first_failure(monkeypatch):
    rec = Recorder(fail_on="second")
    monkeypatch.setattr("kubeherd.utils.ssh.run_command", rec)
    executor = SSHExecutor(make_cluster())

    with pytest.raises(RemoteExecutionFailed):
        asyncio.run(executor.run_many("10.0.0.1", "first", "second", "third"))

    assert [c[-1] for c in rec.calls] == ["first", "second"]


def test_unmanaged_host_is_refused(recorder):
    executor = SSHExecutor(make_cluster())

    with pytest.raises(RemoteExecutionFailed):
        asyncio.run(executor.run("192.168.1.1", "true"))
    assert recorder.calls == []


def test_settings_feed_connect_timeout(recorder):
    settings = KubeherdSettings(ssh_connect_timeout=3, command_timeout=30.0)
    executor = SSHExecutor(make_cluster(), settings=settings)

    asyncio.run(executor.ping("10.0.0.1"))

    assert "ConnectTimeout=3" in recorder.calls[0]
    assert recorder.calls[0][-1] == "true"
