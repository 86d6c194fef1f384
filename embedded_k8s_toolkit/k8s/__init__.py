"""Kubernetes node preparation, cluster lifecycle, CNI and addon runbooks."""

from .addons import ADDONS, install_addon
from .cluster import JoinCommand, bootstrap_cluster, drain_node, join_node, parse_join_command
from .cni import PLUGINS, apply_staged_manifests, install_calico, install_cni, install_flannel
from .node_setup import install_deps, install_kube

__all__ = [
    "ADDONS",
    "JoinCommand",
    "PLUGINS",
    "apply_staged_manifests",
    "bootstrap_cluster",
    "drain_node",
    "install_addon",
    "install_calico",
    "install_cni",
    "install_deps",
    "install_flannel",
    "install_kube",
    "join_node",
    "parse_join_command",
]
