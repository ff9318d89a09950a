"""Tests for gpuhost.netplan module."""

from __future__ import annotations

import json
import subprocess
from unittest.mock import MagicMock, patch

import yaml

from gpuhost.models import AddressInfo, RouteInfo
from gpuhost.netplan import NetplanConfigurator, NetplanTrial, parse_resolv_conf, parse_resolvectl

ADDR_JSON = [
    {
        "ifname": "eno1",
        "addr_info": [
            {"family": "inet", "local": "192.168.1.50", "prefixlen": 24, "dynamic": True, "scope": "global"},
            {"family": "inet6", "local": "fe80::1", "prefixlen": 64, "scope": "link"},
            {"family": "inet6", "local": "2001:db8::5", "prefixlen": 64, "scope": "global"},
        ],
    }
]


def _completed(stdout):
    return subprocess.CompletedProcess(["ip"], 0, stdout=stdout, stderr="")


class TestParsers:
    def test_resolv_conf(self):
        text = "# generated\nnameserver 127.0.0.53\nnameserver ::1\nsearch lan\nnameserver 1.1.1.1\n"
        assert parse_resolv_conf(text) == ["127.0.0.53", "1.1.1.1"]

    def test_resolvectl(self):
        text = "Link 2 (eno1): 1.1.1.1 8.8.8.8 2606:4700::1111\n"
        assert parse_resolvectl(text) == ["1.1.1.1", "8.8.8.8"]


class TestQueries:
    def test_addresses_keep_ipv4_and_global_ipv6(self):
        with patch("gpuhost.netplan.run", return_value=_completed(json.dumps(ADDR_JSON))):
            found = NetplanConfigurator().addresses("eno1")
        assert found == [
            AddressInfo("inet", "192.168.1.50", 24, True),
            AddressInfo("inet6", "2001:db8::5", 64, False),
        ]

    def test_default_routes_onlink(self):
        routes = [{"dst": "default", "gateway": "203.0.113.1", "dev": "eno1", "flags": ["onlink"]}]
        with patch("gpuhost.netplan.run", return_value=_completed(json.dumps(routes))) as mock_run:
            found = NetplanConfigurator().default_routes()
        assert found == [RouteInfo("eno1", "203.0.113.1", True)]
        assert mock_run.call_args[0][0] == ["ip", "-j", "-4", "route", "show", "default"]

    def test_missing_link(self):
        error = subprocess.CalledProcessError(1, ["ip"])
        with patch("gpuhost.netplan.run", side_effect=error):
            assert NetplanConfigurator().link("nope0") is None

    def test_dns_falls_back_to_resolv_conf(self, tmp_path):
        resolv = tmp_path / "resolv.conf"
        resolv.write_text("nameserver 9.9.9.9\n")
        with patch("gpuhost.netplan.shutil.which", return_value=None):
            assert NetplanConfigurator(resolv).dns_servers("eno1") == ["9.9.9.9"]


class TestWriteConfig:
    def test_mode_and_header(self, tmp_path):
        path = tmp_path / "netplan" / "60-bridge-br0.yaml"
        NetplanConfigurator().write_config(path, {"network": {"version": 2}})
        text = path.read_text()
        assert text.startswith("# Generated by gpu-vm-bootstrap\n")
        assert yaml.safe_load(text) == {"network": {"version": 2}}
        assert path.stat().st_mode & 0o777 == 0o600


class TestTrial:
    def test_start_trial_runs_netplan_try(self):
        with patch("gpuhost.netplan.subprocess.Popen") as mock_popen:
            NetplanConfigurator().start_trial(120)
        assert mock_popen.call_args[0][0] == ["netplan", "try", "--timeout=120"]
        assert mock_popen.call_args.kwargs["stdin"] == subprocess.PIPE

    def test_confirm_sends_newline(self):
        proc = MagicMock()
        NetplanTrial(proc).confirm()
        proc.stdin.write.assert_called_once_with("\n")

    def test_wait_terminates_on_timeout(self):
        proc = MagicMock()
        proc.wait.side_effect = [subprocess.TimeoutExpired(["netplan"], 5), -15]
        proc.stdout.read.return_value = ""
        assert NetplanTrial(proc).wait(5) == -15
        proc.terminate.assert_called_once()
