# nodedns

Building blocks for running DNS inside a cluster:

- `nodedns.probe_options`: parse `--probe` specifications for a DNS
  health-check sidecar.
- `nodedns.corefile`: fill a template Corefile for a node-local DNS cache
  and render per-domain stub blocks.
- `nodedns.kubedns_options`: kube-dns settings, argument parsing, cluster
  domain and master URL validation, and choice of configuration source.
- `nodedns.cache_app`: node-cache parameters, the iptables/ebtables rule
  sets it needs, setup error counters and Corefile updates.
- `nodedns.node_cache_cli`: the `nodedns-node-cache` command.
- `nodedns.sidecar_e2e`: the `nodedns-sidecar-e2e` command, an end-to-end
  check of the sidecar against dnsmasq.

The package has no dependencies outside the standard library.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Library use

### Probe options

```python
from nodedns.probe_options import ProbeOptions, ProbeOptionError, parse_probe_option

option = parse_probe_option("mydns,127.0.0.1,example.com,10,A")
option.label     # 'mydns'
option.server    # '127.0.0.1:53'   (":53" is added when the server has no ":")
option.name      # 'example.com.'   (a trailing dot is added)
option.interval  # timedelta(seconds=10)
option.type      # RecordType.A

probes = ProbeOptions()
probes.add("kubedns,[::1]:10053,kubernetes.default.svc.cluster.local,5,SRV")
len(probes)  # 1

try:
    parse_probe_option("dnsmasq,[::1]:53")
except ProbeOptionError as exc:
    print(exc)  # invalid format to --probe
```

A specification has three to five comma-separated fields:
`<label>,<server>,<dns name>[,<interval_seconds>][,<type>]`. The label must
match `^[a-zA-Z0-9_]+$`, the interval must be a whole number of seconds
(default five), and the type is one of `A`, `AAAA`, `SRV` or `ANY`
(default `ANY`). Anything else raises `ProbeOptionError`, a `ValueError`.

### Corefile rendering

```python
from nodedns.corefile import DNSConfig, render_corefile, render_stub_domains

config = DNSConfig(
    stub_domains={"acme.local": ["1.1.1.1"]},
    upstream_nameservers=["2.2.2.2:10053", "3.3.3.3"],
)
body = render_corefile(base_template, config, "169.254.20.10,10.0.0.10", "9.10.11.12")
stubs = render_stub_domains(config.stub_domains, "169.254.20.10 10.0.0.10", "53")
corefile = body + stubs
```

`render_corefile` substitutes the template placeholders:

- `__PILLAR__LOCAL__DNS__` becomes the local addresses, separated by spaces;
- `__PILLAR__CLUSTER__DNS__` becomes the cluster DNS address (`<nil>` when
  it is `None`);
- `__PILLAR__UPSTREAM__SERVERS__` becomes `/etc/resolv.conf` when no
  upstream servers are configured; otherwise the template's TCP `forward`
  block (with `force_tcp`) is replaced by a plain UDP `forward` to the
  configured servers;
- `__PILLAR__DNS__SERVER__` is removed.

`render_stub_domains` renders one server block per stub domain, each with
`errors`, `cache <ttl>` (30 by default), `bind` and `forward`.

### kube-dns options

```python
from nodedns.kubedns_options import (
    KubeDNSConfig, OptionError, choose_config_source, parse_args, parse_cluster_domain,
)

parse_cluster_domain("cluster.local")   # 'cluster.local.'
config = parse_args(["--config-dir", "/etc/kube-dns", "--config-period", "30s"])
source = choose_config_source(config)   # ConfigSource with kind CONFIG_DIR
```

`parse_args` understands `--domain`, `--nameservers`, `--kubecfg-file`,
`--kube-master-url`, `--healthz-port`, `--dns-bind-address`, `--dns-port`,
`--config-map-namespace`, `--config-map`, `--initial-sync-timeout`,
`--config-dir`, `--config-period` and `--profiling`; durations take forms
such as `10s`, `1m30s` or `500ms`. Invalid values raise `OptionError`.
`choose_config_source` refuses a config map and a config directory
together; with neither, it takes the upstream servers from
`--nameservers`. `validate_kube_master_url` expands `$VAR` references
before checking for a scheme and host, `format_federations` renders
`name=domain` pairs and `user_agent` builds the API-server user agent.

### Node-cache application

```python
from nodedns.cache_app import CacheApp, ConfigParams
from nodedns.corefile import DNSConfig

params = ConfigParams(
    local_ip_str="169.254.20.10",
    base_core_file="Corefile.base",
    core_file="Corefile",
    upstream_svc_name="kube-dns",
)
app = CacheApp(params, environ={"KUBE_DNS_SERVICE_HOST": "10.0.0.10"})
app.iptables_rules            # IptablesRule entries for every local address
app.update_corefile(DNSConfig())
app.errors["configmap"]       # failures to read or write the Corefile
```

The cluster DNS address is read from the `<SERVICE>_SERVICE_HOST`
variable named by `to_svc_env`. `build_iptables_rules` and
`build_ebtables_rules` return the rules for the given addresses;
`is_locked_error` recognises an xtables lock failure.

## Commands

### nodedns-node-cache

```
nodedns-node-cache -localip 169.254.20.10 -basecorefile Corefile.base -corefile Corefile
```

Validates the options and writes the Corefile from the template with no
custom upstreams or stub domains. Options: `-localip` (comma-separated,
all of one address family), `-setupinterface`, `-interfacename`,
`-syncinterval`, `-metrics-listen-address`, `-setupiptables`,
`-setupebtables`, `-basecorefile`, `-corefile`, `-kubednscm`,
`-upstreamsvc`, `-health-port`, `-skipteardown`, `-dns.port` and `-conf`
(which overrides `-corefile`). Each may also be written with two dashes.
The exit status is 1 when the options are invalid or the Corefile could
not be written.

### nodedns-sidecar-e2e

```
nodedns-sidecar-e2e -mode harness -baseDir .
```

In `harness` mode it builds the test image with `docker`, runs it with a
temporary directory mounted at `-outputDir`, and checks `metrics.log`
against the expected hit count, cache size and probe error counts. In
`test` mode, inside that image, it starts dnsmasq (`-dnsmasqBinary`) and
the sidecar (`-sidecarBinary`), runs `dig` (`-digBinary`) a hundred
times, fetches the sidecar's metrics and writes every output to
`-outputDir`. `-cleanup` removes the temporary directory afterwards.

## What this package does not do

It does not serve DNS. There is no DNS server, no caching resolver and no
kube-dns HTTP endpoints. `nodedns-node-cache` prepares the Corefile but
does not run a DNS server on it, does not create the network interface,
does not install or remove iptables/ebtables rules (the rule sets are
only built) and does not serve metrics or watch configuration directories
for changes. There is no kube-dns command; `parse_args` and
`choose_config_source` only produce settings. The sidecar that
`nodedns-sidecar-e2e` tests is not part of the package.