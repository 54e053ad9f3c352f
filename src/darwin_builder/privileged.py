"""Privileged credential installation."""

import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path

from .constants import (
    CREDENTIAL_GROUP,
    INSTALLED_PRIVATE_KEY_PATH,
    INSTALLED_PUBLIC_KEY_PATH,
    KEY_ALGORITHM,
    KEY_IDENTITY,
)
from .exceptions import PrivilegedInstallFailure
from .utils import format_command, run_command

logger = logging.getLogger(__name__)


class PrivilegedAction(ABC):
    """The one operation the builder performs with elevated privilege."""

    @abstractmethod
    async def install(self, keys_dir: Path) -> None:
        """Copy the keypair in `keys_dir` into the system credential location.

        Raises:
            PrivilegedInstallFailure: If the installation does not complete.
        """


class SudoInstallCredentials(PrivilegedAction):
    """Runs `install_credentials` through `sudo --reset-timestamp`.

    The full command is logged before it runs so the operator can see exactly what is being
    escalated before answering the password prompt.
    """

    def __init__(
        self,
        private_key_path: Path = Path(INSTALLED_PRIVATE_KEY_PATH),
        public_key_path: Path = Path(INSTALLED_PUBLIC_KEY_PATH),
        group: str = CREDENTIAL_GROUP,
        key_name: str = f"{KEY_IDENTITY}_{KEY_ALGORITHM}",
        sudo: str = "sudo",
        python: str = sys.executable,
    ):
        self.private_key_path = Path(private_key_path)
        self.public_key_path = Path(public_key_path)
        self.group = group
        self.key_name = key_name
        self.sudo = sudo
        self.python = python

    def build_command(self, keys_dir: Path) -> list[str]:
        return [
            self.sudo,
            "--reset-timestamp",
            self.python,
            "-I",
            "-m",
            "darwin_builder.install_credentials",
            str(Path(keys_dir).resolve()),
            "--key-name",
            self.key_name,
            "--private-key",
            str(self.private_key_path),
            "--public-key",
            str(self.public_key_path),
            "--group",
            self.group,
        ]

    async def install(self, keys_dir: Path) -> None:
        cmd = self.build_command(keys_dir)
        logger.info(f"+ {format_command(cmd)}")

        try:
            result = await run_command(*cmd, capture=False)
        except OSError as e:
            raise PrivilegedInstallFailure(f"Failed to run {self.sudo}: {e}") from e

        if not result.ok:
            raise PrivilegedInstallFailure(
                f"Credential installation failed with exit status {result.returncode}"
            )

        logger.info(f"Installed builder credential to {self.private_key_path}")
