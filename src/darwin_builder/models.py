"""Data models for the builder VM."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .constants import GUEST_SSH_PORT


class StoreIsolationMode(Enum):
    """How the guest sees the host's build-artifact store."""

    # Private copy-on-write copy of a host store image
    SNAPSHOTTED_IMAGE = "snapshotted-image"
    # Live writable share of the host store directory
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class PortForward:
    """A host-local port forwarded to a guest port."""

    host_port: int
    guest_port: int = GUEST_SSH_PORT
    protocol: str = "tcp"
    host_address: str = "127.0.0.1"

    def to_hostfwd(self) -> str:
        return f"{self.protocol}:{self.host_address}:{self.host_port}-:{self.guest_port}"


@dataclass(frozen=True)
class SharedDirectory:
    """A host directory exposed to the guest over 9p."""

    source: Path
    target: str
    tag: str
    read_only: bool = True

    def to_virtfs(self) -> str:
        source = escape_option_value(str(self.source))
        options = f"local,path={source},security_model=none,mount_tag={self.tag}"
        if self.read_only:
            options += ",readonly=on"
        return options


def escape_option_value(value: str) -> str:
    """Escape a value for a QEMU comma-separated option string."""
    return value.replace(",", ",,")
