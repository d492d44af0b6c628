import ipaddress

import pytest

from nodedns.cache_app import (
    CacheApp,
    ConfigParams,
    EbtablesRule,
    IptablesRule,
    SetupErrorCounter,
    build_ebtables_rules,
    build_iptables_rules,
    expand_env,
    is_locked_error,
    to_svc_env,
)
from nodedns.corefile import DNSConfig

TEMPLATE = """
cluster.local:53 {
    errors
    cache {
            success 9984 30
            denial 9984 5
    }
    reload
    loop
    bind __PILLAR__LOCAL__DNS__
    forward . __PILLAR__CLUSTER__DNS__ {
            force_tcp
    }
    prometheus :9253
    }
.:53 {
    errors
    cache 30
    reload
    loop
    bind __PILLAR__LOCAL__DNS__ __PILLAR__DNS__SERVER__
    forward . __PILLAR__UPSTREAM__SERVERS__ {
            force_tcp
    }
    prometheus :9253
    }
"""

UPSTREAM_TCP = """
    forward . __PILLAR__UPSTREAM__SERVERS__ {
            force_tcp
    }
"""


def _replace_all(text, pairs):
    for old, new in pairs:
        text = text.replace(old, new)
    return text


def _make_app(tmp_path, local_ips, cluster_ip):
    params = ConfigParams(
        local_ip_str=local_ips,
        local_port="53",
        base_core_file=str(tmp_path / "testCoreFile.base"),
        core_file=str(tmp_path / "testCoreFile"),
        kubedns_cm_path=str(tmp_path / "testKubeDNSDir"),
        upstream_svc_name="test-svc",
        setup_iptables=False,
    )
    (tmp_path / "testCoreFile.base").write_text(TEMPLATE)
    return CacheApp(params, {"TEST_SVC_SERVICE_HOST": cluster_ip})


def _stub_blocks(text):
    return sorted(block.strip() for block in text.strip().split("\n\n"))


@pytest.mark.parametrize(
    "local_ips, cluster_ip",
    [("169.254.20.10,10.0.0.10", "9.10.11.12"), ("fe80:169:254::1,fd00:1:2:3::5", "2001:db8::1")],
)
def test_update_corefile_default_upstream(tmp_path, local_ips, cluster_ip):
    app = _make_app(tmp_path, local_ips, cluster_ip)
    app.update_corefile(DNSConfig())
    out = (tmp_path / "testCoreFile").read_text()
    expected = _replace_all(
        TEMPLATE,
        [
            ("__PILLAR__LOCAL__DNS__", local_ips.replace(",", " ")),
            ("__PILLAR__CLUSTER__DNS__", cluster_ip),
            ("__PILLAR__UPSTREAM__SERVERS__", "/etc/resolv.conf"),
            ("__PILLAR__DNS__SERVER__", ""),
        ],
    )
    assert out == expected
    assert "PILLAR" not in out
    assert f"forward . {cluster_ip} {{" in out


def test_update_corefile_after_template_change(tmp_path):
    app = _make_app(tmp_path, "169.254.20.10,10.0.0.10", "9.10.11.12")
    app.update_corefile(DNSConfig())
    changed = TEMPLATE.replace("loop", "template")
    (tmp_path / "testCoreFile.base").write_text(changed)
    app.update_corefile(DNSConfig())
    out = (tmp_path / "testCoreFile").read_text()
    assert "loop" not in out
    assert out.count("    template\n") == 2
    assert "bind 169.254.20.10 10.0.0.10 \n" in out


def test_update_corefile_custom_config_ipv4(tmp_path):
    app = _make_app(tmp_path, "169.254.20.10,10.0.0.10", "9.10.11.12")
    config = DNSConfig(
        stub_domains={
            "acme.local": ["1.1.1.1"],
            "google.local": ["google-public-dns-a.google.com"],
            "widget.local": ["2.2.2.2:10053", "3.3.3.3"],
        },
        upstream_nameservers=["2.2.2.2:10053", "3.3.3.3"],
    )
    app.update_corefile(config)
    out = (tmp_path / "testCoreFile").read_text()
    expected_main = _replace_all(
        TEMPLATE,
        [
            ("__PILLAR__LOCAL__DNS__", "169.254.20.10 10.0.0.10"),
            ("__PILLAR__CLUSTER__DNS__", "9.10.11.12"),
            ("__PILLAR__DNS__SERVER__", ""),
            (UPSTREAM_TCP, "\n    forward . 2.2.2.2:10053 3.3.3.3\n"),
        ],
    )
    assert out.startswith(expected_main)
    assert "forward . 2.2.2.2:10053 3.3.3.3\n" in out
    bind = "    bind 169.254.20.10 10.0.0.10\n"
    assert _stub_blocks(out[len(expected_main):]) == sorted(
        [
            "acme.local:53 {\n    errors\n    cache 30\n" + bind + "    forward . 1.1.1.1\n}",
            "google.local:53 {\n    errors\n    cache 30\n" + bind
            + "    forward . google-public-dns-a.google.com\n}",
            "widget.local:53 {\n    errors\n    cache 30\n" + bind
            + "    forward . 2.2.2.2:10053 3.3.3.3\n}",
        ]
    )


def test_update_corefile_custom_config_ipv6(tmp_path):
    app = _make_app(tmp_path, "fe80:169:254::1,fd00:1:2:3::5", "2001:db8::1")
    config = DNSConfig(
        stub_domains={
            "acme.local": ["2001:db8:1:1:1::1"],
            "widget.local": ["[2001:db8:2:2:2::2]:10053", "2001:db8:3:3:3::3"],
        },
        upstream_nameservers=["[2001:db8:2:2:2::2]:10053", "2001:db8:3:3:3::3"],
    )
    app.update_corefile(config)
    out = (tmp_path / "testCoreFile").read_text()
    assert "PILLAR" not in out
    assert "force_tcp" in out  # the cluster block keeps TCP
    assert out.count("force_tcp") == 1
    assert "forward . [2001:db8:2:2:2::2]:10053 2001:db8:3:3:3::3\n" in out
    assert "forward . 2001:db8::1 {" in out
    assert "acme.local:53 {\n    errors\n    cache 30\n    bind fe80:169:254::1 fd00:1:2:3::5\n" in out


def test_update_corefile_missing_base_counts_error(tmp_path):
    params = ConfigParams(
        base_core_file=str(tmp_path / "absent.base"),
        core_file=str(tmp_path / "Corefile"),
        setup_iptables=False,
    )
    app = CacheApp(params, {})
    app.update_corefile(DNSConfig())
    assert app.errors["configmap"] == 1
    assert not (tmp_path / "Corefile").exists()


def test_missing_cluster_ip_renders_nil(tmp_path):
    params = ConfigParams(
        local_ip_str="169.254.20.10",
        base_core_file=str(tmp_path / "base"),
        core_file=str(tmp_path / "Corefile"),
        upstream_svc_name="absent-svc",
        setup_iptables=False,
    )
    (tmp_path / "base").write_text("forward . __PILLAR__CLUSTER__DNS__\n")
    app = CacheApp(params, {})
    assert app.cluster_dns_ip is None
    app.update_corefile(DNSConfig())
    assert (tmp_path / "Corefile").read_text() == "forward . <nil>\n"


def test_cluster_ip_parsed_from_environment():
    app = CacheApp(ConfigParams(upstream_svc_name="kube-dns", setup_iptables=False),
                   {"KUBE_DNS_SERVICE_HOST": "10.0.0.10"})
    assert app.cluster_dns_ip == ipaddress.ip_address("10.0.0.10")


def test_to_svc_env():
    assert to_svc_env("kube-dns") == "$KUBE_DNS_SERVICE_HOST"
    assert to_svc_env("test-svc") == "$TEST_SVC_SERVICE_HOST"


def test_expand_env():
    env = {"HOST": "10.0.0.1", "PORT": "443"}
    assert expand_env("https://$HOST:${PORT}/x", env) == "https://10.0.0.1:443/x"
    assert expand_env("$MISSING-end", env) == "-end"


def test_is_locked_error():
    assert is_locked_error("Another app is currently holding the xtables lock. Perhaps")
    assert not is_locked_error("permission denied")


def test_iptables_rules():
    rules = build_iptables_rules("169.254.20.10,10.0.0.10", "53", "8080")
    assert len(rules) == 24
    assert rules[0] == IptablesRule(
        "raw", "PREROUTING", ("-p", "tcp", "-d", "169.254.20.10", "--dport", "53", "-j", "NOTRACK")
    )
    assert rules[3] == IptablesRule(
        "filter", "INPUT", ("-p", "udp", "-d", "169.254.20.10", "--dport", "53", "-j", "ACCEPT")
    )
    assert rules[11] == IptablesRule(
        "raw", "OUTPUT", ("-p", "tcp", "-s", "169.254.20.10", "--sport", "8080", "-j", "NOTRACK")
    )
    assert rules[12].args[3] == "10.0.0.10"


def test_ebtables_rules():
    assert build_ebtables_rules("fd00::5,fd00::6", True) == [
        EbtablesRule("broute", "BROUTING", ("-p", "IPv6", "--ip-dst", "fd00::5", "-j", "redirect")),
        EbtablesRule("broute", "BROUTING", ("-p", "IPv6", "--ip-dst", "fd00::6", "-j", "redirect")),
    ]
    assert build_ebtables_rules("10.0.0.1", False)[0].args[1] == "IPv4"


def test_is_ipv6():
    v6 = CacheApp(ConfigParams(local_ips=[ipaddress.ip_address("fd00::5")], setup_iptables=False), {})
    v4 = CacheApp(ConfigParams(local_ips=[ipaddress.ip_address("10.0.0.1")], setup_iptables=False), {})
    empty = CacheApp(ConfigParams(setup_iptables=False), {})
    assert v6.is_ipv6() is True
    assert v4.is_ipv6() is False
    assert empty.is_ipv6() is False


def test_app_builds_rules_when_enabled():
    params = ConfigParams(
        local_ip_str="fd00::5",
        local_ips=[ipaddress.ip_address("fd00::5")],
        setup_iptables=True,
        setup_ebtables=True,
    )
    app = CacheApp(params, {})
    assert len(app.iptables_rules) == 12
    assert app.ebtables_rules[0].args[:2] == ("-p", "IPv6")


def test_setup_error_counter():
    counter = SetupErrorCounter()
    assert counter["iptables_lock"] == 0
    assert counter.inc("iptables") == 1
    assert counter.inc("iptables") == 2
    assert counter.inc("ebtables") == 1
    assert counter.as_dict()["interface_add"] == 0
    assert counter.as_dict()["iptables"] == 2