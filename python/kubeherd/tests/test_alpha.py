import asyncio
import os

import pytest

from kubeherd.deployment.alpha import (
    exec_on_hosts,
    hosts_by_roles,
    prune,
    prune_targets,
    update_certs,
)
from kubeherd.errors import ConfigurationError
from kubeherd.tests.fakes import make_cluster
from kubeherd.utils.fanout import FanOutError

M1, M2 = "10.0.0.1", "10.0.0.2"
N1 = "10.0.0.10"


def test_update_certs_on_masters_in_order(executor):
    cluster = make_cluster(masters=[M1, M2], nodes=[N1])

    asyncio.run(update_certs(cluster, executor, ["api.example.com", " 1.2.3.4 ", ""]))

    assert executor.log == [
        ("run", M1, "herdutil cert update --alt-names api.example.com,1.2.3.4"),
        ("run", M2, "herdutil cert update --alt-names api.example.com,1.2.3.4"),
    ]


def test_update_certs_needs_names(executor):
    with pytest.raises(ConfigurationError):
        asyncio.run(update_certs(make_cluster(), executor, [" "]))


def test_hosts_by_roles():
    cluster = make_cluster(masters=[M1], nodes=[N1])
    assert hosts_by_roles(cluster, []) == [M1, N1]
    assert hosts_by_roles(cluster, ["node"]) == [N1]
    with pytest.raises(ConfigurationError):
        hosts_by_roles(cluster, ["etcd"])


def test_exec_on_hosts_collects_output(executor):
    cluster = make_cluster(masters=[M1], nodes=[N1])
    executor.outputs.insert(0, ("hostname", "box"))

    assert asyncio.run(exec_on_hosts(cluster, executor, "hostname")) == {
        M1: "box",
        N1: "box",
    }


def test_exec_on_hosts_reports_failures(executor):
    cluster = make_cluster(masters=[M1], nodes=[N1])
    executor.unreachable = {N1}

    with pytest.raises(FanOutError) as info:
        asyncio.run(exec_on_hosts(cluster, executor, "uptime", ["master", "node"]))
    assert info.value.host == N1
    assert executor.ran(M1, "uptime")


def test_prune(store, tmp_path):
    asyncio.run(store.save(make_cluster(name="live")))
    live_dir = store.cluster_dir("live")
    with open(os.path.join(live_dir, "Clusterfile.tmp"), "w") as f:
        f.write("partial")
    os.makedirs(store.cluster_dir("abandoned"))
    images = tmp_path / "images"
    (images / "kubernetes").mkdir(parents=True)
    (images / "old_image").mkdir()

    targets = prune_targets(store, str(images))

    assert targets == [
        store.cluster_dir("abandoned"),
        os.path.join(live_dir, "Clusterfile.tmp"),
        str(images / "old_image"),
    ]
    assert prune(store, str(images)) == targets
    assert store.list_clusters() == ["live"]
    assert os.path.isdir(images / "kubernetes")
    assert prune_targets(store, str(images)) == []
