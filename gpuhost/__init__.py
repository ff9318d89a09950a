"""gpu-vm-bootstrap package."""

__all__ = [
    "actions",
    "cli",
    "config",
    "constants",
    "devices",
    "exceptions",
    "gpu",
    "hostdev",
    "models",
    "netplan",
    "network",
    "phases",
    "ports",
    "preflight",
    "probes",
    "provision",
    "runtime",
    "services",
    "utils",
    "vmctl",
]
