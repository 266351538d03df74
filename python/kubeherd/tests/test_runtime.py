import asyncio
import json
import os
import re

import pytest
import yaml

from kubeherd.deployment.kubernetes import KubernetesRuntime, load_registry_config
from kubeherd.deployment.runtimes import new_runtime
from kubeherd.errors import ConfigurationError, ProtectedMasterRemoval
from kubeherd.models.runtime import RuntimeConfig, RuntimeState
from kubeherd.tests.fakes import CERT_KEY, FakeCertService, make_cluster, write_metadata
from kubeherd.utils.fanout import FanOutError
from kubeherd.utils.ssh import SSHNotReady

M1, M2, M3 = "10.0.0.1", "10.0.0.2", "10.0.0.3"
N1, N2 = "10.0.0.10", "10.0.0.11"


def _runtime(cluster, executor, store, config, state=RuntimeState.BOOTSTRAPPED):
    write_metadata(store, cluster.name)
    return KubernetesRuntime(
        cluster, config, executor, FakeCertService(), store, state=state
    )


def _index(executor, host, pattern):
    for i, (kind, h, cmd) in enumerate(executor.log):
        if kind == "run" and h == host and pattern in cmd:
            return i
    raise AssertionError(f"{pattern!r} never ran on {host}")


def _written_docs(executor, host):
    """Decode the first kubeadm config written to `host`."""
    for cmd in executor.commands(host):
        if "xxd" in cmd and cmd.endswith("kubeadm.yml"):
            hexed = re.search(r"echo '([0-9a-f]+)'", cmd).group(1)
            docs = yaml.safe_load_all(bytes.fromhex(hexed).decode())
            return {d["kind"]: d for d in docs}
    raise AssertionError(f"no kubeadm config written to {host}")


def test_join_nodes_after_scale(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1], nodes=[N1, N2])
    runtime = _runtime(cluster, executor, store, runtime_config)

    asyncio.run(runtime.join_nodes([N1, N2]))

    assert runtime.state is RuntimeState.BOOTSTRAPPED
    assert runtime.cert_service.sent == [[N1, N2]]
    assert executor.ran(M1, "kubeadm token create")
    assert not executor.ran(M1, "upload-certs")
    assert not executor.ran(M1, "kubeadm join")
    for node in (N1, N2):
        order = [
            _index(executor, node, "true"),
            _index(executor, node, "route check"),
            _index(executor, node, "registry.cluster.local"),
            _index(executor, node, "kubeadm.yml"),
            _index(executor, node, "10.103.97.2 apiserver.cluster.local"),
            _index(executor, node, "herdutil ipvs"),
            _index(executor, node, "kubeadm join"),
            _index(executor, node, "kube-lvscare.yaml"),
        ]
        assert order == sorted(order)
        join = _written_docs(executor, node)["JoinConfiguration"]
        assert join["discovery"]["bootstrapToken"]["apiServerEndpoint"] == "10.103.97.2:6443"
        assert join["discovery"]["bootstrapToken"]["token"] == "abcdef.0123456789abcdef"
        assert join["nodeRegistration"]["kubeletExtraArgs"]["node-ip"] == node
        assert "controlPlane" not in join


def test_join_nothing_is_a_no_op(executor, store, runtime_config):
    runtime = _runtime(make_cluster(), executor, store, runtime_config)

    asyncio.run(runtime.join_nodes([]))
    asyncio.run(runtime.join_masters([]))

    assert executor.log == []
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def test_one_failing_node_does_not_stop_the_other(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1], nodes=[N1, N2])
    runtime = _runtime(cluster, executor, store, runtime_config)
    executor.failing = {N2: ["kubeadm join"]}

    with pytest.raises(FanOutError) as info:
        asyncio.run(runtime.join_nodes([N1, N2]))

    assert info.value.host == N2
    assert list(info.value.failures) == [N2]
    assert executor.ran(N1, "kube-lvscare.yaml")
    assert not executor.ran(N2, "kube-lvscare.yaml")
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def test_missing_vip_route_is_added(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1], nodes=[N1])
    runtime = _runtime(cluster, executor, store, runtime_config)
    executor.outputs = [o for o in executor.outputs if o[0] != "route check"]

    asyncio.run(runtime.join_nodes([N1]))

    assert executor.ran(N1, f"herdutil route add --host 10.103.97.2 --gateway {N1}")


def test_ssh_readiness_budget_exhausted(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1], nodes=[N1, N2])
    runtime = _runtime(cluster, executor, store, runtime_config)
    executor.unreachable = {N2}

    with pytest.raises(FanOutError) as info:
        asyncio.run(runtime.join_nodes([N1, N2]))

    assert isinstance(info.value.cause, SSHNotReady)
    assert info.value.cause.attempts == 3
    assert executor.commands(N2) == ["true", "true", "true"]
    assert not any("kubeadm join" in c for c in executor.commands())
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def test_join_masters_one_at_a_time(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2, M3], nodes=[N1])
    runtime = _runtime(cluster, executor, store, runtime_config)
    asyncio.run(runtime.join_masters([M2, M3], refresh_nodes=[N1]))

    assert executor.ran(M1, "upload-certs")
    assert _index(executor, M2, "kubeadm join") < _index(executor, M3, "kubeadm join")
    assert _index(executor, M2, f"{M2} apiserver.cluster.local") < _index(
        executor, M3, "kubeadm join"
    )
    join = _written_docs(executor, M2)["JoinConfiguration"]
    assert join["controlPlane"]["certificateKey"] == CERT_KEY
    assert join["discovery"]["bootstrapToken"]["apiServerEndpoint"] == f"{M1}:6443"
    assert executor.ran(N1, "kube-lvscare.yaml")
    assert _index(executor, N1, "kube-lvscare.yaml") > _index(executor, M3, "kubeadm join")


def test_join_masters_leaves_unjoined_workers_alone(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2], nodes=[N1, N2])
    runtime = _runtime(cluster, executor, store, runtime_config)

    asyncio.run(runtime.join_masters([M2], refresh_nodes=[N1]))

    assert executor.ran(N1, "kube-lvscare.yaml")
    assert executor.commands(N2) == []


def test_failing_master_join_stops_the_rest(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2, M3])
    runtime = _runtime(cluster, executor, store, runtime_config)
    executor.failing = {M2: ["kubeadm join"]}

    with pytest.raises(FanOutError):
        asyncio.run(runtime.join_masters([M2, M3]))

    assert not executor.ran(M3, "kubeadm join")
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def _with_node_names(executor):
    executor.outputs.insert(0, ("kubectl get nodes", f"{N1} node-a\n{N2} node-b"))


def test_delete_nodes_cleans_then_deregisters(executor, store, runtime_config):
    runtime = _runtime(make_cluster(masters=[M1]), executor, store, runtime_config)
    _with_node_names(executor)

    asyncio.run(runtime.delete_nodes([N1, N2]))

    deletes = [c for c in executor.commands(M1) if c.startswith("kubectl delete node")]
    assert deletes == [
        "kubectl delete node node-a --ignore-not-found",
        "kubectl delete node node-b --ignore-not-found",
    ]
    first_delete = _index(executor, M1, "kubectl delete node")
    for node in (N1, N2):
        assert _index(executor, node, "kubeadm reset") < first_delete
        assert _index(executor, node, "route del") < first_delete
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def test_failed_cleanup_blocks_deregistration(executor, store, runtime_config):
    runtime = _runtime(make_cluster(masters=[M1]), executor, store, runtime_config)
    _with_node_names(executor)
    executor.failing = {N2: ["kubeadm reset"]}

    with pytest.raises(FanOutError):
        asyncio.run(runtime.delete_nodes([N1, N2]))

    assert not executor.ran(M1, "kubectl delete node")


def test_force_delete_deregisters_anyway(executor, store):
    config = RuntimeConfig(ssh_ready_retries=1, ssh_ready_delay=0, force_delete=True)
    runtime = _runtime(make_cluster(masters=[M1]), executor, store, config)
    _with_node_names(executor)
    executor.unreachable = {N2}

    asyncio.run(runtime.delete_nodes([N1, N2]))

    assert executor.ran(M1, "kubectl delete node node-b")


def test_unregistered_node_is_skipped(executor, store, runtime_config):
    runtime = _runtime(make_cluster(masters=[M1]), executor, store, runtime_config)

    asyncio.run(runtime.delete_nodes([N1]))

    assert executor.ran(N1, "kubeadm reset")
    assert not executor.ran(M1, "kubectl delete node")


def test_master0_cannot_be_deleted(executor, store, runtime_config):
    runtime = _runtime(make_cluster(masters=[M1, M2]), executor, store, runtime_config)

    with pytest.raises(ProtectedMasterRemoval):
        asyncio.run(runtime.delete_masters([M2, M1]))

    assert executor.log == []
    assert runtime.state is RuntimeState.BOOTSTRAPPED


def test_delete_master_refreshes_lvscare(executor, store, runtime_config):
    desired = make_cluster(masters=[M1], nodes=[N1])
    runtime = _runtime(desired, executor, store, runtime_config)
    executor.outputs.insert(0, ("kubectl get nodes", f"{M2} master-2"))

    asyncio.run(runtime.delete_masters([M2]))

    assert executor.ran(M2, "kubeadm reset")
    assert executor.ran(M1, "kubectl delete node master-2")
    lvscare = [c for c in executor.commands(N1) if "kube-lvscare.yaml" in c][0]
    manifest = bytes.fromhex(re.search(r"echo '([0-9a-f]+)'", lvscare).group(1)).decode()
    assert f"{M1}:6443" in manifest
    assert f"{M2}:6443" not in manifest


def test_reset_masters_never_overlap(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2, M3], nodes=[N1, N2])
    runtime = _runtime(cluster, executor, store, runtime_config)
    executor.delay = {M1: 0.01, M2: 0.01, M3: 0.01}
    executor.failing = {M2: ["kubeadm reset"]}

    asyncio.run(runtime.reset())

    masters = {M1, M2, M3}
    for host, active in executor.overlaps:
        if host in masters:
            assert not (active & masters)
    assert executor.ran(M3, "kubeadm reset")
    assert executor.ran(M1, "docker rm -f kubeherd-registry")
    assert runtime.state is RuntimeState.RESET

    with pytest.raises(ConfigurationError):
        asyncio.run(runtime.join_nodes([N1]))


def test_init_bootstraps_then_joins(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2], nodes=[N1])
    runtime = _runtime(cluster, executor, store, runtime_config, RuntimeState.UNINITIALIZED)
    etc = os.path.join(store.rootfs_dir(cluster.name), "etc")
    os.makedirs(etc)
    with open(os.path.join(etc, "kubeadm.yml"), "w") as f:
        f.write(
            "kind: ClusterConfiguration\n"
            "networking:\n"
            "  podSubnet: 10.244.0.0/16\n"
        )

    asyncio.run(runtime.init())

    assert runtime.state is RuntimeState.BOOTSTRAPPED
    assert os.path.isfile(store.kubeconfig_path(cluster.name))
    assert _index(executor, M1, "kubeadm init --config") < _index(executor, M2, "kubeadm join")
    assert _index(executor, M2, "kubeadm join") < _index(executor, N1, "kubeadm join")
    # a worker only gets the load balancer manifest once it has joined
    assert _index(executor, N1, "kube-lvscare.yaml") > _index(executor, N1, "kubeadm join")
    docs = _written_docs(executor, M1)
    assert docs["ClusterConfiguration"]["kubernetesVersion"] == "v1.22.8"
    assert docs["ClusterConfiguration"]["networking"] == {
        "podSubnet": "10.244.0.0/16",
        "serviceSubnet": "10.96.0.0/22",
    }
    assert docs["KubeletConfiguration"]["cgroupDriver"] == "systemd"


def test_init_twice_is_refused(executor, store, runtime_config):
    runtime = _runtime(make_cluster(), executor, store, runtime_config)

    with pytest.raises(ConfigurationError):
        asyncio.run(runtime.init())
    assert executor.log == []


def test_upgrade_uses_image_kube_version(executor, store, runtime_config):
    cluster = make_cluster(masters=[M1, M2], nodes=[N1])
    runtime = _runtime(cluster, executor, store, runtime_config)
    with open(os.path.join(store.rootfs_dir(cluster.name), "Metadata"), "w") as f:
        json.dump({"version": "v1.22.9-r1", "kubeVersion": "v1.22.9"}, f)

    asyncio.run(runtime.upgrade())

    assert executor.ran(M1, "kubeadm upgrade apply v1.22.9 -y")
    assert executor.ran(M2, "kubeadm upgrade node")
    assert executor.ran(N1, "kubeadm upgrade node")


def test_upgrade_needs_bootstrapped_cluster(executor, store, runtime_config):
    runtime = _runtime(
        make_cluster(), executor, store, runtime_config, RuntimeState.UNINITIALIZED
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(runtime.upgrade())


def test_missing_metadata(executor, store, runtime_config):
    runtime = KubernetesRuntime(
        make_cluster(), runtime_config, executor, FakeCertService(), store
    )
    with pytest.raises(ConfigurationError):
        asyncio.run(runtime.get_cluster_metadata())


def test_registry_config_from_rootfs(tmp_path):
    assert asyncio.run(load_registry_config(str(tmp_path), M1)).endpoint() == (
        "registry.cluster.local:5000"
    )
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "registry.yml").write_text(
        "ip: 1.2.3.4\ndomain: hub.local\nport: 8443\nusername: admin\npassword: pw\n"
    )
    registry = asyncio.run(load_registry_config(str(tmp_path), M1))
    assert registry.ip == M1
    assert registry.endpoint() == "hub.local:8443"


def test_unknown_runtime_kind(executor, store, runtime_config):
    with pytest.raises(ConfigurationError):
        new_runtime(
            "k3s", make_cluster(), runtime_config, executor, FakeCertService(), store
        )
