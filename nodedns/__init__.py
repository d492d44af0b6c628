"""Cluster DNS tooling: probe options, Corefile rendering, kube-dns options, node-cache setup and a sidecar end-to-end harness."""

__version__ = "0.1.0"

__all__ = [
    "cache_app",
    "corefile",
    "kubedns_options",
    "node_cache_cli",
    "probe_options",
    "sidecar_e2e",
]