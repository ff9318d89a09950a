"""Configuration loading and environment variable parsing for gpu-vm-bootstrap."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from gpuhost.constants import (
    BOOTSTRAP_CONFIG_NAME,
    DEFAULT_BRIDGE_NAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_GRUB_FILE,
    DEFAULT_LOG_FILE,
    DEFAULT_MODPROBE_CONF,
    DEFAULT_MODULES_FILE,
    DEFAULT_NETPLAN_DIR,
    DEFAULT_OS_RELEASE_FILE,
    DEFAULT_TRY_TIMEOUT,
    GPU_MODE_FLEXIBLE,
    GPU_MODES,
    ISOLATION_POLICIES,
    ISOLATION_WARN,
    PASSTHROUGH_DRIVER,
    VMCTL_CONFIG_NAME,
)
from gpuhost.exceptions import InvalidInputError
from gpuhost.models import RunConfiguration
from gpuhost.network import validate_bridge_name
from gpuhost.utils import get_env, get_env_bool, parse_int_env

PHASE_NUMBERS = {"nvidia": 1, "kvm": 2, "vfio": 3, "bridge": 4}

_FILE_KEYS = {
    "gpu_mode",
    "bridge_name",
    "iommu_isolation",
    "skip",
    "try_timeout",
    "log_file",
    "netplan_dir",
    "grub_file",
    "modules_file",
    "modprobe_conf",
}


def load_yaml_file(path: Path, required: bool = False) -> Dict[str, Any]:
    """Read a YAML mapping; a missing optional file yields an empty dict."""
    if not path.exists():
        if required:
            raise InvalidInputError(f"Config file not found: {path}")
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise InvalidInputError(f"Config file {path} is not valid YAML: {exc}") from exc
    except OSError as exc:
        raise InvalidInputError(f"Cannot read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInputError(f"Config file {path} must contain a mapping at the top level")
    return data


def _parse_skip(raw: Any) -> FrozenSet[int]:
    if raw in (None, ""):
        return frozenset()
    items = raw.split(",") if isinstance(raw, str) else raw
    if not isinstance(items, (list, tuple, set, frozenset)):
        raise InvalidInputError(f"skip must be a list of phases (got {raw!r})")
    numbers = set()
    for item in items:
        key = str(item).strip().lower()
        if key in PHASE_NUMBERS:
            numbers.add(PHASE_NUMBERS[key])
        elif key.isdigit() and int(key) in PHASE_NUMBERS.values():
            numbers.add(int(key))
        else:
            valid = ", ".join(PHASE_NUMBERS)
            raise InvalidInputError(f"Unknown phase '{item}' in skip list (valid: {valid})")
    return frozenset(numbers)


def _choice(value: str, allowed, label: str) -> str:
    value = str(value).strip().lower()
    if value not in allowed:
        options = " or ".join(f"'{a}'" for a in allowed)
        raise InvalidInputError(f"Invalid {label}: '{value}' (must be {options})")
    return value


def build_config(args: Optional[argparse.Namespace] = None) -> RunConfiguration:
    """Merge built-in defaults, environment, config file and flags, in rising priority."""

    def flag(name: str) -> Any:
        return getattr(args, name, None) if args is not None else None

    config_dir = Path(get_env("CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))
    explicit_file = flag("config")
    file_path = Path(explicit_file) if explicit_file else config_dir / BOOTSTRAP_CONFIG_NAME
    file_values = load_yaml_file(file_path, required=bool(explicit_file))
    unknown = sorted(set(file_values) - _FILE_KEYS)
    if unknown:
        raise InvalidInputError(f"Unknown key(s) in {file_path}: {', '.join(unknown)}")

    def pick(name: str, env_name: str, default: Any) -> Any:
        value = flag(name)
        if value is not None:
            return value
        if name in file_values:
            return file_values[name]
        env_value = get_env(env_name)
        if env_value:
            return env_value
        return default

    gpu_mode = _choice(pick("gpu_mode", "GPU_MODE", GPU_MODE_FLEXIBLE), GPU_MODES, "GPU mode")
    isolation = _choice(
        pick("iommu_isolation", "IOMMU_ISOLATION", ISOLATION_WARN), ISOLATION_POLICIES, "IOMMU isolation policy"
    )
    bridge_name = validate_bridge_name(str(pick("bridge_name", "BRIDGE_NAME", DEFAULT_BRIDGE_NAME)))

    if "try_timeout" in file_values:
        try:
            try_timeout = int(file_values["try_timeout"])
        except (TypeError, ValueError):
            raise InvalidInputError(f"try_timeout must be an integer (got {file_values['try_timeout']!r})")
        if try_timeout < 10:
            raise InvalidInputError(f"try_timeout must be >= 10 (got {try_timeout})")
    else:
        try_timeout = parse_int_env("NETPLAN_TRY_TIMEOUT", str(DEFAULT_TRY_TIMEOUT), min_val=10, max_val=3600)

    skip = set(_parse_skip(file_values.get("skip")))
    skip |= _parse_skip(get_env("SKIP_PHASES"))
    for name, number in PHASE_NUMBERS.items():
        if flag(f"skip_{name}"):
            skip.add(number)

    def path_of(name: str, env_name: str, default: Path) -> Path:
        return Path(pick(name, env_name, str(default)))

    return RunConfiguration(
        dry_run=bool(flag("dry_run")) or get_env_bool("DRY_RUN"),
        reboot_allowed=bool(flag("reboot")),
        assume_yes=bool(flag("yes")),
        verbose=bool(flag("verbose")) or get_env_bool("LOG_VERBOSE"),
        gpu_mode=gpu_mode,
        bridge_name=bridge_name,
        skip=frozenset(skip),
        iommu_isolation=isolation,
        netplan_dir=path_of("netplan_dir", "NETPLAN_DIR", DEFAULT_NETPLAN_DIR),
        grub_file=path_of("grub_file", "GRUB_DEFAULT_FILE", DEFAULT_GRUB_FILE),
        modules_file=path_of("modules_file", "MODULES_FILE", DEFAULT_MODULES_FILE),
        modprobe_conf=path_of("modprobe_conf", "MODPROBE_CONF", DEFAULT_MODPROBE_CONF),
        os_release_file=Path(get_env("OS_RELEASE_FILE", str(DEFAULT_OS_RELEASE_FILE))),
        config_dir=config_dir,
        log_file=path_of("log_file", "LOG_FILE", DEFAULT_LOG_FILE),
        try_timeout=try_timeout,
        passthrough_driver=get_env("PASSTHROUGH_DRIVER", PASSTHROUGH_DRIVER) or PASSTHROUGH_DRIVER,
    )


def render_vmctl_config(cfg: RunConfiguration, gpu_slot: Optional[str]) -> str:
    document = {
        "gpu_mode": cfg.gpu_mode,
        "bridge_name": cfg.bridge_name,
        "gpu_slot": gpu_slot,
        "passthrough_driver": cfg.passthrough_driver,
        "iommu_isolation": cfg.iommu_isolation,
    }
    return "# Written by gpu-vm-bootstrap\n" + yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def load_vmctl_config(config_dir: Path) -> Dict[str, Any]:
    return load_yaml_file(config_dir / VMCTL_CONFIG_NAME)
