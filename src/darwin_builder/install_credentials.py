"""Install the builder credential into its system location.

This module is what runs under `sudo`. It is kept deliberately small so it can be read before the
password prompt is accepted. It copies exactly two files and does nothing else:

    KEYS/builder_ed25519      -> /etc/nix/builder_ed25519      (mode 600, group nixbld)
    KEYS/builder_ed25519.pub  -> /etc/nix/builder_ed25519.pub  (mode 644, group nixbld)

Re-running it with the same inputs leaves the system in the same state.
"""

import argparse
import grp
import os
import sys
import tempfile
from pathlib import Path

from .constants import (
    CREDENTIAL_GROUP,
    INSTALLED_PRIVATE_KEY_PATH,
    INSTALLED_PUBLIC_KEY_PATH,
    KEY_ALGORITHM,
    KEY_IDENTITY,
)

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644


def install_file(source: Path, destination: Path, mode: int, gid: int) -> None:
    """Copy `source` over `destination` atomically with the given mode and group."""
    data = source.read_bytes()
    tmp_path = None

    try:
        # NamedTemporaryFile is created 0600, so private material is never world-readable
        with tempfile.NamedTemporaryFile(
            dir=destination.parent, prefix=f"{destination.name}.tmp.", delete=False
        ) as tmp_file:
            tmp_path = tmp_file.name
            tmp_file.write(data)
            tmp_file.flush()
            os.fchown(tmp_file.fileno(), -1, gid)
            os.fchmod(tmp_file.fileno(), mode)
            os.fsync(tmp_file.fileno())

        os.replace(tmp_path, destination)
    except Exception:
        if tmp_path:
            Path(tmp_path).unlink(missing_ok=True)
        raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="install-credentials",
        description="Copy the builder keypair into the system credential location.",
    )
    parser.add_argument("keys", type=Path, help="Directory holding the generated keypair")
    parser.add_argument("--key-name", default=f"{KEY_IDENTITY}_{KEY_ALGORITHM}")
    parser.add_argument("--private-key", type=Path, default=Path(INSTALLED_PRIVATE_KEY_PATH))
    parser.add_argument("--public-key", type=Path, default=Path(INSTALLED_PUBLIC_KEY_PATH))
    parser.add_argument("--group", default=CREDENTIAL_GROUP)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        gid = grp.getgrnam(args.group).gr_gid
        install_file(args.keys / args.key_name, args.private_key, PRIVATE_KEY_MODE, gid)
        install_file(args.keys / f"{args.key_name}.pub", args.public_key, PUBLIC_KEY_MODE, gid)
    except KeyError:
        print(f"install-credentials: unknown group: {args.group}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"install-credentials: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
