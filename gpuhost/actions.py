"""Idempotent actions built on the state probes."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence

from gpuhost import probes
from gpuhost.constants import ACTION_APPLIED, ACTION_DRY_RUN, ACTION_SATISFIED, GRUB_CMDLINE_RE
from gpuhost.exceptions import ActionError, BootstrapError
from gpuhost.utils import log, timestamp, write_file_atomic

if TYPE_CHECKING:  # pragma: no cover
    from gpuhost.phases import RunContext

_MUTATION_ERRORS = (OSError, ValueError, subprocess.CalledProcessError, subprocess.TimeoutExpired)


def ensure(
    ctx: "RunContext",
    description: str,
    probe: Callable[[], bool],
    mutate: Callable[[], None],
) -> str:
    """Make ``probe`` true by calling ``mutate`` only when it is not already.

    Returns one of ``satisfied``, ``dry-run`` or ``applied``. A failing
    mutation is raised as :class:`ActionError` naming the action.
    """
    if probe():
        log("DEBUG", f"Already satisfied: {description}")
        return ACTION_SATISFIED
    if ctx.cfg.dry_run:
        log("DRY", f"Would {description}")
        ctx.planned.append(description)
        return ACTION_DRY_RUN
    log("DEBUG", f"Applying: {description}")
    try:
        mutate()
    except BootstrapError:
        raise
    except _MUTATION_ERRORS as exc:
        raise ActionError(f"Failed to {description}: {exc}") from exc
    ctx.applied.append(description)
    return ACTION_APPLIED


def ensure_packages(ctx: "RunContext", names: Sequence[str], description: str = "") -> str:
    packages = ctx.host.packages

    def _install() -> None:
        missing = [name for name in names if not packages.is_installed(name)]
        packages.install(missing)

    return ensure(
        ctx,
        description or f"install package(s): {' '.join(names)}",
        lambda: probes.packages_installed(packages, names),
        _install,
    )


def ensure_service_running(ctx: "RunContext", name: str) -> str:
    services = ctx.host.services
    return ensure(
        ctx,
        f"enable and start service: {name}",
        lambda: probes.service_active(services, name),
        lambda: services.enable_and_start(name),
    )


def ensure_line_in_file(ctx: "RunContext", path: Path, line: str) -> str:
    def _append() -> None:
        existing = path.read_text() if path.exists() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        write_file_atomic(path, f"{existing}{line}\n", mode=0o644)

    return ensure(ctx, f"add '{line}' to {path}", lambda: probes.line_in_file(path, line), _append)


def ensure_file_content(
    ctx: "RunContext",
    path: Path,
    content: str,
    mode: int = 0o644,
    description: str = "",
) -> str:
    return ensure(
        ctx,
        description or f"write {path}",
        lambda: probes.file_has_content(path, content),
        lambda: write_file_atomic(path, content, mode=mode),
    )


def ensure_user_in_group(ctx: "RunContext", user: str, group: str) -> str:
    system = ctx.host.system
    return ensure(
        ctx,
        f"add user '{user}' to group '{group}'",
        lambda: probes.user_in_group(system, user, group),
        lambda: system.add_user_to_group(user, group),
    )


def merge_grub_params(text: str, params: Sequence[str]) -> str:
    """Return GRUB defaults ``text`` with ``params`` added to GRUB_CMDLINE_LINUX_DEFAULT."""
    lines = text.splitlines()
    for index, line in enumerate(lines):
        match = GRUB_CMDLINE_RE.match(line.strip())
        if match:
            tokens = match.group(2).split()
            tokens.extend(p for p in params if p not in tokens)
            lines[index] = f'GRUB_CMDLINE_LINUX_DEFAULT="{" ".join(tokens)}"'
            break
    else:
        lines.append(f'GRUB_CMDLINE_LINUX_DEFAULT="{" ".join(params)}"')
    return "\n".join(lines) + "\n"


def ensure_grub_params(ctx: "RunContext", path: Path, params: Sequence[str]) -> str:
    """Add kernel parameters to the GRUB defaults file, keeping a timestamped backup."""

    def _rewrite() -> None:
        if not path.is_file():
            raise ActionError(f"GRUB configuration file not found: {path}")
        backup = path.with_name(f"{path.name}.bak.{timestamp()}")
        shutil.copy2(path, backup)
        log("DEBUG", f"Backed up {path} to {backup}")
        write_file_atomic(path, merge_grub_params(path.read_text(), params), mode=0o644)

    return ensure(
        ctx,
        f"add to GRUB_CMDLINE_LINUX_DEFAULT: {' '.join(params)}",
        lambda: all(probes.grub_param_set(path, param) for param in params),
        _rewrite,
    )


def apply_command(ctx: "RunContext", description: str, cmd: Sequence[str]) -> str:
    """Run a one-shot command whose need an earlier action already established."""
    system = ctx.host.system
    return ensure(ctx, description, lambda: False, lambda: system.execute(list(cmd)))
