"""Tests for gpuhost.actions module."""

from __future__ import annotations

import dataclasses
import subprocess

import pytest

from gpuhost import actions
from gpuhost.exceptions import ActionError, MissingDependencyError
from gpuhost.phases import RunContext


def _dry(ctx: RunContext) -> RunContext:
    return dataclasses.replace(ctx, cfg=dataclasses.replace(ctx.cfg, dry_run=True), planned=[], applied=[])


class TestEnsure:
    def test_satisfied_check_skips_mutation(self, ctx):
        calls = []
        result = actions.ensure(ctx, "do a thing", lambda: True, lambda: calls.append(1))
        assert result == "satisfied"
        assert calls == []
        assert ctx.applied == []

    def test_applies_when_unsatisfied(self, ctx):
        calls = []
        result = actions.ensure(ctx, "do a thing", lambda: False, lambda: calls.append(1))
        assert result == "applied"
        assert calls == [1]
        assert ctx.applied == ["do a thing"]

    def test_dry_run_never_mutates(self, ctx, capsys):
        dry = _dry(ctx)
        calls = []
        result = actions.ensure(dry, "install widgets", lambda: False, lambda: calls.append(1))
        assert result == "dry-run"
        assert calls == []
        assert dry.planned == ["install widgets"]
        assert "[DRY-RUN] Would install widgets" in capsys.readouterr().out

    def test_mutation_error_names_the_action(self, ctx):
        def boom():
            raise subprocess.CalledProcessError(100, ["apt-get"])

        with pytest.raises(ActionError, match="Failed to install widgets"):
            actions.ensure(ctx, "install widgets", lambda: False, boom)
        assert ctx.applied == []

    def test_bootstrap_errors_pass_through(self, ctx):
        def missing():
            raise MissingDependencyError("no GPU")

        with pytest.raises(MissingDependencyError):
            actions.ensure(ctx, "x", lambda: False, missing)


class TestPackages:
    def test_installs_only_missing(self, ctx):
        ctx.host.packages.installed.add("qemu-kvm")
        actions.ensure_packages(ctx, ["qemu-kvm", "ovmf"])
        assert ctx.host.packages.installs == [["ovmf"]]

    def test_second_call_is_satisfied(self, ctx):
        actions.ensure_packages(ctx, ["ovmf"])
        assert actions.ensure_packages(ctx, ["ovmf"]) == "satisfied"
        assert len(ctx.host.packages.installs) == 1


class TestFiles:
    def test_line_appended_once(self, ctx, tmp_path):
        modules = tmp_path / "modules"
        modules.write_text("# /etc/modules\nloop")
        actions.ensure_line_in_file(ctx, modules, "vfio")
        actions.ensure_line_in_file(ctx, modules, "vfio")
        assert modules.read_text() == "# /etc/modules\nloop\nvfio\n"

    def test_line_creates_file(self, ctx, tmp_path):
        modules = tmp_path / "new" / "modules"
        actions.ensure_line_in_file(ctx, modules, "vfio_pci")
        assert modules.read_text() == "vfio_pci\n"

    def test_file_content_rewritten_only_on_drift(self, ctx, tmp_path):
        path = tmp_path / "cuda.sh"
        assert actions.ensure_file_content(ctx, path, "a\n") == "applied"
        assert actions.ensure_file_content(ctx, path, "a\n") == "satisfied"
        path.write_text("edited\n")
        assert actions.ensure_file_content(ctx, path, "a\n") == "applied"
        assert path.read_text() == "a\n"


class TestGrub:
    def test_merge_keeps_existing_tokens(self):
        text = 'GRUB_DEFAULT=0\nGRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n'
        merged = actions.merge_grub_params(text, ["intel_iommu=on", "iommu=pt"])
        assert 'GRUB_CMDLINE_LINUX_DEFAULT="quiet splash intel_iommu=on iommu=pt"' in merged
        assert merged.startswith("GRUB_DEFAULT=0\n")

    def test_merge_does_not_duplicate(self):
        text = 'GRUB_CMDLINE_LINUX_DEFAULT="iommu=pt"\n'
        merged = actions.merge_grub_params(text, ["iommu=pt"])
        assert merged == 'GRUB_CMDLINE_LINUX_DEFAULT="iommu=pt"\n'

    def test_merge_appends_missing_line(self):
        merged = actions.merge_grub_params("GRUB_TIMEOUT=5\n", ["amd_iommu=on"])
        assert merged.splitlines()[-1] == 'GRUB_CMDLINE_LINUX_DEFAULT="amd_iommu=on"'

    def test_ensure_backs_up_before_rewrite(self, ctx):
        grub = ctx.cfg.grub_file
        original = grub.read_text()
        assert actions.ensure_grub_params(ctx, grub, ["intel_iommu=on", "iommu=pt"]) == "applied"
        backups = list(grub.parent.glob("grub.bak.*"))
        assert len(backups) == 1
        assert backups[0].read_text() == original
        assert actions.ensure_grub_params(ctx, grub, ["intel_iommu=on", "iommu=pt"]) == "satisfied"

    def test_missing_grub_file(self, ctx, tmp_path):
        with pytest.raises(ActionError, match="not found"):
            actions.ensure_grub_params(ctx, tmp_path / "nogrub", ["iommu=pt"])


class TestUsersAndCommands:
    def test_user_added_to_group(self, ctx):
        actions.ensure_user_in_group(ctx, "alice", "libvirt")
        assert "libvirt" in ctx.host.system.groups["alice"]
        assert actions.ensure_user_in_group(ctx, "alice", "libvirt") == "satisfied"

    def test_apply_command_failure(self, ctx):
        ctx.host.system.failing.add("update-grub")
        with pytest.raises(ActionError, match="Failed to regenerate"):
            actions.apply_command(ctx, "regenerate the GRUB configuration", ["update-grub"])
