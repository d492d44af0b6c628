import ipaddress

import pytest

from nodedns.node_cache_cli import (
    ArgumentValidationError,
    main,
    parse_and_validate_args,
)

TEMPLATE = """
.:53 {
    bind __PILLAR__LOCAL__DNS__ __PILLAR__DNS__SERVER__
    forward . __PILLAR__UPSTREAM__SERVERS__ {
            force_tcp
    }
    }
"""


def test_defaults_with_localip():
    params = parse_and_validate_args(["-localip", "169.254.20.10,10.0.0.10"])
    assert params.local_ips == [
        ipaddress.ip_address("169.254.20.10"),
        ipaddress.ip_address("10.0.0.10"),
    ]
    assert params.local_port == "53"
    assert params.health_port == "8080"
    assert params.interface_name == "nodelocaldns"
    assert params.upstream_svc_name == "kube-dns"
    assert params.core_file == "/etc/Corefile"
    assert params.base_core_file == "/etc/coredns/Corefile.base"
    assert params.setup_interface is True
    assert params.setup_ebtables is False


def test_ipv6_addresses_accepted():
    params = parse_and_validate_args(["--localip=fe80:169:254::1,fd00:1:2:3::5"])
    assert all(ip.version == 6 for ip in params.local_ips)
    assert len(params.local_ips) == 2


def test_missing_localip_is_rejected():
    with pytest.raises(ArgumentValidationError, match="invalid localip specified"):
        parse_and_validate_args([])


def test_bad_localip_is_rejected():
    with pytest.raises(ArgumentValidationError, match="invalid localip specified"):
        parse_and_validate_args(["-localip", "169.254.20.10,nonsense"])


def test_mixed_families_rejected():
    with pytest.raises(ArgumentValidationError, match="unexpected IP Family for localIP"):
        parse_and_validate_args(["-localip", "169.254.20.10,fd00::5"])


def test_invalid_dns_port():
    with pytest.raises(ArgumentValidationError, match="invalid port specified"):
        parse_and_validate_args(["-localip", "10.0.0.10", "-dns.port", "abc"])


def test_invalid_health_port():
    with pytest.raises(ArgumentValidationError, match="invalid healthcheck port specified"):
        parse_and_validate_args(["-localip", "10.0.0.10", "-health-port", "x1"])


def test_dns_port_and_conf_override():
    params = parse_and_validate_args(
        ["-localip", "10.0.0.10", "-dns.port", "1053", "-conf", "/tmp/other"]
    )
    assert params.local_port == "1053"
    assert params.core_file == "/tmp/other"


def test_bool_flags_with_values():
    params = parse_and_validate_args(
        ["-localip", "10.0.0.10", "-setupinterface=false", "-setupebtables", "-skipteardown=true"]
    )
    assert params.setup_interface is False
    assert params.setup_ebtables is True
    assert params.skip_teardown is True


def test_bad_bool_value_rejected():
    with pytest.raises(ArgumentValidationError):
        parse_and_validate_args(["-localip", "10.0.0.10", "-setupiptables=maybe"])


def test_sync_interval_parsed_as_seconds():
    params = parse_and_validate_args(["-localip", "10.0.0.10", "-syncinterval", "2m"])
    assert params.interval == 120


def test_main_reports_invalid_args(capsys):
    assert main(["-localip", "bogus"]) == 1
    assert "invalid localip specified" in capsys.readouterr().err


def test_main_writes_corefile(tmp_path, monkeypatch):
    monkeypatch.setenv("KUBE_DNS_SERVICE_HOST", "9.10.11.12")
    base = tmp_path / "Corefile.base"
    base.write_text(TEMPLATE)
    out = tmp_path / "Corefile"
    status = main(
        [
            "-localip", "169.254.20.10,10.0.0.10",
            "-basecorefile", str(base),
            "-corefile", str(out),
            "-setupiptables=false",
        ]
    )
    assert status == 0
    text = out.read_text()
    assert "bind 169.254.20.10 10.0.0.10 \n" in text
    assert "forward . /etc/resolv.conf {" in text
    assert "PILLAR" not in text


def test_main_fails_when_template_missing(tmp_path):
    status = main(
        [
            "-localip", "10.0.0.10",
            "-basecorefile", str(tmp_path / "missing"),
            "-corefile", str(tmp_path / "Corefile"),
        ]
    )
    assert status == 1
    assert not (tmp_path / "Corefile").exists()