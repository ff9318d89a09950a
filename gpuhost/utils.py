"""Utility functions for gpu-vm-bootstrap."""

from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from gpuhost.constants import _LOG_VERBOSE, PROGRAM_NAME, TRUTHY, VERSION
from gpuhost.exceptions import ActionError, InvalidInputError

_COLOURS = {
    "INFO": "\033[0;36m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "SUCCESS": "\033[0;32m",
    "DEBUG": "\033[0;90m",
    "DRY": "\033[1;33m",
}
_BOLD = "\033[1m"
_RESET = "\033[0m"
_RULE = "=" * 62

_verbose = _LOG_VERBOSE
_log_path: Optional[Path] = None


def _colour_enabled() -> bool:
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def configure_logging(log_file: Optional[Path] = None, verbose: Optional[bool] = None) -> bool:
    """Set verbosity and open the persistent run log.

    Returns False when the log file cannot be created; console output keeps
    working in that case.
    """
    global _verbose, _log_path
    if verbose is not None:
        _verbose = verbose or _LOG_VERBOSE
    if log_file is None:
        _log_path = None
        return False
    try:
        ensure_directory(log_file.parent)
        log_file.touch(exist_ok=True)
        os.chmod(log_file, 0o644)
    except OSError:
        _log_path = None
        return False
    _log_path = log_file
    return True


def current_log_file() -> Optional[Path]:
    return _log_path


def log_to_file(level: str, message: str) -> None:
    """Append a timestamped record to the run log, if one is open."""
    global _log_path
    if _log_path is None:
        return
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        with _log_path.open("a") as handle:
            handle.write(f"{stamp} [{level:<5}] {message}\n")
    except OSError as exc:
        # Fall back to console-only output for the rest of the run
        _log_path = None
        print(f"[WARN] Run log disabled: {exc}", flush=True)


def log(level: str, message: str) -> None:
    """Lightweight structured logging to the console and the run log."""
    log_to_file(level, message)
    if level == "DEBUG" and not _verbose:
        return
    colour = _COLOURS.get(level, "") if _colour_enabled() else ""
    reset = _RESET if colour else ""
    label = "DRY-RUN" if level == "DRY" else level
    print(f"{colour}[{label}]{reset} {message}", flush=True)


def log_phase(number: int, name: str) -> None:
    bold = _BOLD if _colour_enabled() else ""
    reset = _RESET if bold else ""
    print(f"\n{bold}{_RULE}\n  Phase {number}: {name}\n{_RULE}{reset}\n", flush=True)
    log_to_file("PHASE", f"Phase {number}: {name}")


def log_step(tag: str, message: str) -> None:
    print(f"  -> {message}", flush=True)
    log_to_file("STEP", f"[{tag}] {message}")


def print_banner() -> None:
    border = "=" * 58
    print(border, flush=True)
    print(f"  {PROGRAM_NAME} v{VERSION}", flush=True)
    print("  GPU-accelerated virtualisation host setup", flush=True)
    print(border, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInputError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise InvalidInputError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise InvalidInputError(f"{name} must be <= {max_val} (got {value})")
    return value


def timestamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging.

    Unless the caller captures output itself, stdout and stderr are folded
    together and appended to the run log instead of the console.
    """
    log("DEBUG", f"Running: {' '.join(cmd)}")
    captured = kwargs.get("capture_output") or "stdout" in kwargs
    if not captured:
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.STDOUT
    try:
        result = subprocess.run(cmd, check=check, text=True, **kwargs)
    except subprocess.CalledProcessError as exc:
        if not captured and exc.output:
            log_to_file("CMD", exc.output.rstrip())
        raise
    if not captured and result.stdout:
        log_to_file("CMD", result.stdout.rstrip())
    return result


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_file_atomic(path: Path, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content`` without exposing a half-written file."""
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def stdin_is_interactive() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


def inside_multiplexer(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return True when running under tmux or GNU screen."""
    env = os.environ if environ is None else environ
    if env.get("TMUX") or env.get("STY"):
        return True
    return env.get("TERM", "").startswith("screen")


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` to ``destination`` through a temporary file."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": f"{PROGRAM_NAME}/{VERSION}"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ActionError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ActionError(f"Failed to download {url}: {exc.reason}")

    ensure_directory(destination.parent)
    start_time = time.time()
    downloaded = 0
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
            tmp.flush()
            tmp_path.replace(destination)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    elapsed = time.time() - start_time
    log("DEBUG", f"Downloaded {downloaded / 1024:.1f} KiB in {elapsed:.1f}s")
