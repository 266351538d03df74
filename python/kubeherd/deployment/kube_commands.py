"""
kubeherd/deployment/kube_commands.py

Remote command templates and kubeadm document rendering used by the
Kubernetes runtime. Everything here is a pure function of its arguments.

`herdutil` is the helper binary shipped in the cluster image rootfs; it
manages IPVS rules, routes and certificate updates on the hosts.

File contents are shipped hex-encoded through `xxd -r -p` so no quoting of
YAML ever reaches the remote shell.
"""

from __future__ import annotations

import copy
import posixpath
import re
import shlex
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from kubeherd.models.runtime import JoinToken, RegistryConfig

API_SERVER_PORT = 6443

# ----------------------------------------------------------------------
# Command templates
# ----------------------------------------------------------------------

KUBEADM_INIT = "kubeadm init --config={config} --upload-certs -v {vlog}"
KUBEADM_JOIN = "kubeadm join --config={config} -v {vlog}"
KUBEADM_TOKEN_CREATE = "kubeadm token create --print-join-command -v {vlog}"
KUBEADM_UPLOAD_CERTS = "kubeadm init phase upload-certs --upload-certs -v {vlog}"
KUBEADM_UPGRADE_APPLY = "kubeadm upgrade apply {version} -y -v {vlog}"
KUBEADM_UPGRADE_NODE = (
    "kubeadm upgrade node -v {vlog} && systemctl daemon-reload && systemctl restart kubelet"
)

COPY_KUBECONFIG = "mkdir -p $HOME/.kube && cp -f /etc/kubernetes/admin.conf $HOME/.kube/config"
REMOVE_KUBECONFIG = "rm -rf $HOME/.kube"
ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
KUBE_DELETE_NODE = "kubectl delete node {name} --ignore-not-found"
KUBE_NODE_ADDRESSES = (
    "kubectl get nodes -o jsonpath='{range .items[*]}"
    '{.status.addresses[?(@.type=="InternalIP")].address} {.metadata.name}{"\\n"}'
    "{end}'"
)

CGROUP_DRIVER = "docker info -f '{{.CgroupDriver}}' 2>/dev/null || true"
DEFAULT_CGROUP_DRIVER = "systemd"

REMOTE_CLEAN_MASTER_OR_NODE = (
    "if which kubeadm > /dev/null 2>&1; then kubeadm reset -f -v {vlog}; fi && "
    "rm -rf /etc/kubernetes/ /etc/cni /opt/cni /var/lib/etcd /var/lib/kubelet "
    "/var/lib/dockershim /var/run/kubernetes && "
    "(modprobe -r ipip || true) && (ipvsadm -C || true)"
)
REMOTE_ADD_ETC_HOSTS = "cat /etc/hosts | grep '{entry}' || echo '{entry}' >> /etc/hosts"
REMOTE_REMOVE_ETC_HOSTS = 'sed -i "/{domain}/d" /etc/hosts'
REMOTE_REMOVE_REGISTRY_CERTS = "rm -rf /etc/docker/certs.d/{domain}*"
REMOTE_STATIC_POD_MKDIR = "mkdir -p /etc/kubernetes/manifests"
LVSCARE_STATIC_POD_PATH = "/etc/kubernetes/manifests/kube-lvscare.yaml"
LVSCARE_IMAGE = "{repo}/kubeherd/lvscare:latest"

REMOTE_ADD_IPVS = (
    "herdutil ipvs --vs {vip}:{port} {backends} "
    "--health-path /healthz --health-schem https --run-once"
)
REMOTE_CHECK_ROUTE = "herdutil route check --host {host}"
REMOTE_ADD_ROUTE = "herdutil route add --host {host} --gateway {gateway}"
REMOTE_DEL_ROUTE = (
    "if command -v herdutil > /dev/null 2>&1; then "
    "herdutil route del --host {host} --gateway {gateway}; fi"
)
ROUTE_OK = "ok"
REMOTE_CERT_UPDATE = "herdutil cert update --alt-names {alt_names}"

REGISTRY_CONTAINER = "kubeherd-registry"
APPLY_REGISTRY = "cd {rootfs}/scripts && bash init-registry.sh {port} {rootfs}/registry {domain}"
DELETE_REGISTRY = (
    f"if docker inspect {REGISTRY_CONTAINER} > /dev/null 2>&1; then "
    f"docker rm -f {REGISTRY_CONTAINER}; fi"
)
REGISTRY_LOGIN = "docker login {endpoint} -u {username} -p {password}"

DEFAULT_POD_SUBNET = "100.64.0.0/10"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/22"


def write_file(content: str, path: str) -> str:
    """Shell command writing `content` to `path` on the remote host."""
    enc = content.encode("utf-8").hex()
    parent = posixpath.dirname(path) or "/"
    return f"mkdir -p {parent} && echo '{enc}' | xxd -r -p > {path}"


def add_etc_hosts(ip: str, domain: str) -> str:
    return REMOTE_ADD_ETC_HOSTS.format(entry=f"{ip} {domain}")


def remove_etc_hosts(domain: str) -> str:
    return REMOTE_REMOVE_ETC_HOSTS.format(domain=domain)


def ipvs_command(vip: str, masters: Sequence[str]) -> str:
    backends = " ".join(f"--rs {m}:{API_SERVER_PORT}" for m in masters)
    return REMOTE_ADD_IPVS.format(vip=vip, port=API_SERVER_PORT, backends=backends)


def registry_hosts_commands(registry: RegistryConfig) -> List[str]:
    """Point the registry domain at the registry host and log in if needed."""
    cmds = [add_etc_hosts(registry.ip, registry.domain)]
    if registry.username and registry.password:
        cmds.append(
            REGISTRY_LOGIN.format(
                endpoint=registry.endpoint(),
                username=shlex.quote(registry.username),
                password=shlex.quote(registry.password),
            )
        )
    return cmds


def clean_commands(vlog: int, api_server_domain: str, registry_domain: str) -> List[str]:
    """Commands returning a host to the state before it joined."""
    return [
        REMOTE_CLEAN_MASTER_OR_NODE.format(vlog=vlog),
        REMOVE_KUBECONFIG,
        remove_etc_hosts(api_server_domain),
        remove_etc_hosts(registry_domain),
        REMOTE_REMOVE_REGISTRY_CERTS.format(domain=registry_domain),
    ]


# ----------------------------------------------------------------------
# Output parsing
# ----------------------------------------------------------------------

_TOKEN_RE = re.compile(r"--token\s+(\S+)")
_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash\s+(\S+)")
_CERT_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


def parse_join_command(output: str) -> Tuple[str, str]:
    """
    Extract (token, ca_cert_hash) from `kubeadm token create --print-join-command`.

    Raises:
        ValueError: if either value is missing.
    """
    token = _TOKEN_RE.search(output)
    ca_hash = _HASH_RE.search(output)
    if not token or not ca_hash:
        raise ValueError(f"unexpected kubeadm join command output: {output!r}")
    return token.group(1), ca_hash.group(1)


def parse_certificate_key(output: str) -> str:
    """The certificate key is the last 64-hex line printed by upload-certs."""
    for line in reversed(output.splitlines()):
        if _CERT_KEY_RE.match(line.strip()):
            return line.strip()
    raise ValueError("no certificate key in kubeadm upload-certs output")


def parse_node_addresses(output: str) -> Dict[str, str]:
    """Map InternalIP => node name from KUBE_NODE_ADDRESSES output."""
    return {
        parts[0]: parts[1]
        for parts in (line.split() for line in output.splitlines())
        if len(parts) == 2
    }


# ----------------------------------------------------------------------
# kubeadm documents
# ----------------------------------------------------------------------


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_overrides(
    docs: List[Dict[str, Any]], overrides: Dict[str, Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Merge user documents (keyed by kind) into the rendered ones."""
    return [deep_merge(d, overrides.get(d["kind"], {})) for d in docs]


def dump_documents(docs: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(docs, sort_keys=False)


def kubelet_configuration(cgroup_driver: str) -> Dict[str, Any]:
    return {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "cgroupDriver": cgroup_driver,
    }


def init_documents(
    *,
    master0: str,
    masters: Sequence[str],
    vip: str,
    api_server_domain: str,
    kube_version: str,
    registry: RegistryConfig,
    cgroup_driver: str,
) -> List[Dict[str, Any]]:
    """InitConfiguration, ClusterConfiguration, KubeProxyConfiguration, KubeletConfiguration."""
    cert_sans = list(
        dict.fromkeys(["127.0.0.1", "localhost", api_server_domain, vip, *masters])
    )
    return [
        {
            "apiVersion": "kubeadm.k8s.io/v1beta2",
            "kind": "InitConfiguration",
            "localAPIEndpoint": {
                "advertiseAddress": master0,
                "bindPort": API_SERVER_PORT,
            },
        },
        {
            "apiVersion": "kubeadm.k8s.io/v1beta2",
            "kind": "ClusterConfiguration",
            "kubernetesVersion": kube_version,
            "controlPlaneEndpoint": f"{api_server_domain}:{API_SERVER_PORT}",
            "imageRepository": f"{registry.repo()}/library",
            "networking": {
                "podSubnet": DEFAULT_POD_SUBNET,
                "serviceSubnet": DEFAULT_SERVICE_SUBNET,
            },
            "apiServer": {"certSANs": cert_sans},
        },
        {
            "apiVersion": "kubeproxy.config.k8s.io/v1alpha1",
            "kind": "KubeProxyConfiguration",
            "mode": "ipvs",
            "ipvs": {"excludeCIDRs": [f"{vip}/32"]},
        },
        kubelet_configuration(cgroup_driver),
    ]


def join_documents(
    *,
    api_server_endpoint: str,
    join: JoinToken,
    node_ip: str,
    cgroup_driver: str,
    control_plane: bool = False,
) -> List[Dict[str, Any]]:
    """JoinConfiguration + KubeletConfiguration for one node."""
    join_cfg: Dict[str, Any] = {
        "apiVersion": "kubeadm.k8s.io/v1beta2",
        "kind": "JoinConfiguration",
        "discovery": {
            "bootstrapToken": {
                "apiServerEndpoint": api_server_endpoint,
                "token": join.token,
                "caCertHashes": [join.ca_cert_hash],
            },
            "timeout": "5m0s",
        },
        "nodeRegistration": {"kubeletExtraArgs": {"node-ip": node_ip}},
    }
    if control_plane:
        join_cfg["controlPlane"] = {
            "localAPIEndpoint": {"advertiseAddress": node_ip, "bindPort": API_SERVER_PORT},
        }
        if join.certificate_key:
            join_cfg["controlPlane"]["certificateKey"] = join.certificate_key
    return [join_cfg, kubelet_configuration(cgroup_driver)]


def lvscare_static_pod(vip: str, masters: Sequence[str], image: str) -> str:
    """Static pod keeping the node-local IPVS rules in sync with the masters."""
    command = ["/usr/bin/lvscare", "care", "--vs", f"{vip}:{API_SERVER_PORT}"]
    for master in masters:
        command += ["--rs", f"{master}:{API_SERVER_PORT}"]
    command += ["--health-path", "/healthz", "--health-schem", "https"]
    pod: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": "kube-lvscare",
            "namespace": "kube-system",
            "labels": {"component": "kube-lvscare", "tier": "control-plane"},
        },
        "spec": {
            "hostNetwork": True,
            "priorityClassName": "system-node-critical",
            "containers": [
                {
                    "name": "kube-lvscare",
                    "image": image,
                    "imagePullPolicy": "IfNotPresent",
                    "command": command,
                    "securityContext": {"privileged": True},
                    "volumeMounts": [
                        {"name": "lib-modules", "mountPath": "/lib/modules", "readOnly": True}
                    ],
                }
            ],
            "volumes": [
                {"name": "lib-modules", "hostPath": {"path": "/lib/modules"}}
            ],
        },
    }
    return yaml.safe_dump(pod, sort_keys=False)


def api_server_endpoint(address: str) -> str:
    return f"{address}:{API_SERVER_PORT}"


def cert_update_command(alt_names: Sequence[str]) -> str:
    return REMOTE_CERT_UPDATE.format(alt_names=",".join(alt_names))


def kubeadm_config_path(rootfs: str, name: Optional[str] = None) -> str:
    return posixpath.join(rootfs, "etc", name or "kubeadm.yml")
