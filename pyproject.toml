[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodedns"
version = "0.1.0"
description = "Cluster DNS tooling: sidecar probe options, node-local cache Corefile rendering and rule sets, kube-dns options and a sidecar end-to-end harness"
requires-python = ">=3.10"
dependencies = []
keywords = ["dns", "corefile", "node-local-dns", "kube-dns", "dnsmasq", "iptables", "ebtables"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nodedns-node-cache = "nodedns.node_cache_cli:main"
nodedns-sidecar-e2e = "nodedns.sidecar_e2e:main"

[tool.hatch.build.targets.wheel]
packages = ["nodedns"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
