"""Tests for gpuhost.preflight module."""

from __future__ import annotations

import dataclasses

import pytest

from gpuhost.exceptions import PreconditionError
from gpuhost.phases import RunContext
from gpuhost.preflight import check_multiplexer, check_network, check_os, check_root, check_secure_boot, preflight


def _with(ctx, **changes):
    return RunContext(cfg=dataclasses.replace(ctx.cfg, **changes), host=ctx.host)


class TestCheckOs:
    def test_supported(self, ctx):
        check_os(ctx)

    def test_wrong_version(self, ctx):
        ctx.host.system.release = {"ID": "ubuntu", "VERSION_ID": "22.04"}
        with pytest.raises(PreconditionError, match="Unsupported OS: ubuntu 22.04") as info:
            check_os(ctx)
        assert info.value.exit_code == 5

    def test_unreadable(self, ctx):
        ctx.host.system.release = {}
        with pytest.raises(PreconditionError, match="unable to identify the OS") as info:
            check_os(ctx)
        assert info.value.exit_code == 5


class TestCheckRoot:
    def test_not_root(self, ctx):
        ctx.host.system.root = False
        with pytest.raises(PreconditionError, match="Must run as root") as info:
            check_root(ctx)
        assert info.value.exit_code == 4


class TestCheckNetwork:
    def test_any_host_is_enough(self, ctx):
        ctx.host.system.reachable = {"github.com"}
        check_network(ctx)

    def test_offline(self, ctx):
        ctx.host.system.reachable = set()
        with pytest.raises(PreconditionError, match="No network connectivity") as info:
            check_network(ctx)
        assert info.value.exit_code == 6


class TestSecureBoot:
    def test_installs_mokutil_then_passes(self, ctx):
        check_secure_boot(ctx)
        assert ctx.host.packages.installs == [["mokutil"]]
        assert ["mokutil", "--sb-state"] in ctx.host.system.captured

    def test_enabled_fails_with_instructions(self, ctx):
        ctx.host.system.outputs["mokutil"] = "SecureBoot enabled\n"
        with pytest.raises(PreconditionError) as info:
            check_secure_boot(ctx)
        assert "Disable it before running this tool" in str(info.value)
        assert info.value.exit_code == 1

    def test_unknown_state_only_warns(self, ctx, capsys):
        ctx.host.system.commands.add("mokutil")
        ctx.host.system.failing.add("mokutil")
        check_secure_boot(ctx)
        assert "Could not determine Secure Boot state" in capsys.readouterr().out

    def test_dry_run_without_mokutil_skips(self, ctx):
        dry = _with(ctx, dry_run=True)
        check_secure_boot(dry)
        assert dry.host.packages.installs == []
        assert dry.host.system.captured == []


class TestMultiplexer:
    def test_required_for_bridge_phase(self, ctx):
        with pytest.raises(PreconditionError, match="Not running inside tmux or screen"):
            check_multiplexer(ctx)

    def test_inside_tmux(self, ctx, monkeypatch):
        monkeypatch.setenv("TMUX", "/tmp/tmux-0/default,99,0")
        check_multiplexer(ctx)

    def test_screen_term(self, ctx, monkeypatch):
        monkeypatch.setenv("TERM", "screen-256color")
        check_multiplexer(ctx)

    def test_not_needed_when_bridge_skipped(self, ctx):
        check_multiplexer(_with(ctx, skip=frozenset({4})))

    @pytest.mark.parametrize("flag", ["assume_yes", "dry_run"])
    def test_warns_when_unattended(self, ctx, capsys, flag):
        check_multiplexer(_with(ctx, **{flag: True}))
        assert "Not running inside tmux or screen" in capsys.readouterr().out


class TestPreflight:
    def test_stops_at_failing_step(self, ctx):
        ctx.host.system.root = False
        with pytest.raises(PreconditionError):
            preflight(ctx)
        assert ctx.current_step == "root"
        assert ctx.host.system.captured == []

    def test_all_checks(self, ctx, monkeypatch):
        monkeypatch.setenv("STY", "1234.bootstrap")
        preflight(ctx)
        assert ctx.current_step == "multiplexer"
