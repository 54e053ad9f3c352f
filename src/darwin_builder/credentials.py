"""Credential provisioning for the builder keypair."""

import logging
from enum import Enum
from pathlib import Path

import aiofiles

from .constants import KEY_ALGORITHM, KEY_COMMENT, KEY_IDENTITY
from .exceptions import CredentialDriftDetectionFailure, KeyGenerationFailure
from .keypair import Keypair
from .privileged import PrivilegedAction
from .utils import run_command

logger = logging.getLogger(__name__)


class CredentialState(Enum):
    """States of the keys directory during provisioning."""

    ABSENT = "absent"  # At least one half of the keypair is missing
    PRESENT = "present"  # Keypair exists, not yet compared with the installed credential
    READY = "ready"  # Keypair matches the installed credential


async def read_key(path: Path) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


class CredentialProvisioner:
    """Ensures a host keypair exists and is installed as the system credential.

    The privileged installer is called at most once per `ensure`, and only when the local public
    key differs from the installed one.
    """

    def __init__(
        self,
        installer: PrivilegedAction,
        installed_public_key_path: Path,
        identity: str = KEY_IDENTITY,
        algorithm: str = KEY_ALGORITHM,
        comment: str = KEY_COMMENT,
        ssh_keygen: str = "ssh-keygen",
    ):
        self.installer = installer
        self.installed_public_key_path = Path(installed_public_key_path)
        self.identity = identity
        self.algorithm = algorithm
        self.comment = comment
        self.ssh_keygen = ssh_keygen

    def keypair_for(self, keys_dir: Path) -> Keypair:
        return Keypair.in_directory(keys_dir, self.identity, self.algorithm, self.comment)

    def observe(self, keypair: Keypair) -> CredentialState:
        """Initial state of the keys directory."""
        return CredentialState.PRESENT if keypair.is_complete else CredentialState.ABSENT

    async def ensure(self, keys_dir: Path) -> Keypair:
        """Drive the keys directory to the READY state.

        Args:
            keys_dir: Directory holding (or about to hold) the keypair

        Returns:
            The ready keypair

        Raises:
            KeyGenerationFailure: If a keypair cannot be generated.
            PrivilegedInstallFailure: If installing the credential fails.
        """
        keypair = self.keypair_for(keys_dir)
        state = self.observe(keypair)
        logger.debug(f"Keys directory {keys_dir} is {state.value}")

        if state is CredentialState.ABSENT:
            await self._generate(keypair)
            state = CredentialState.PRESENT

        if state is CredentialState.PRESENT:
            if await self._matches_installed(keypair):
                logger.info("Builder credential is already installed")
            else:
                await self.installer.install(keypair.keys_dir)
            state = CredentialState.READY

        logger.debug(f"Keys directory {keys_dir} is {state.value}")
        return keypair

    async def _generate(self, keypair: Keypair) -> None:
        """Generate a fresh keypair, discarding any half-present remnant first."""
        if not keypair.is_absent:
            logger.warning(f"Keypair in {keypair.keys_dir} is incomplete, regenerating")
        try:
            keypair.discard()
        except OSError as e:
            raise KeyGenerationFailure(f"Cannot remove stale keypair: {e}") from e

        logger.info(f"Generating {keypair.algorithm} keypair at {keypair.private_key_path}")
        cmd = [
            self.ssh_keygen,
            "-q",
            "-f",
            str(keypair.private_key_path),
            "-t",
            keypair.algorithm,
            "-N",
            "",
            "-C",
            keypair.comment,
        ]

        try:
            result = await run_command(*cmd)
        except OSError as e:
            raise KeyGenerationFailure(f"Failed to run {self.ssh_keygen}: {e}") from e

        if not result.ok:
            raise KeyGenerationFailure(f"{self.ssh_keygen} failed: {result.diagnostic()}")

        if not keypair.is_complete:
            raise KeyGenerationFailure(f"{self.ssh_keygen} did not produce both key files")

        try:
            public_key = await read_key(keypair.public_key_path)
        except OSError as e:
            raise KeyGenerationFailure(f"Generated public key is unreadable: {e}") from e

        if not keypair.is_well_formed(public_key):
            raise KeyGenerationFailure(
                f"Generated public key is not a valid {keypair.algorithm} key: "
                f"{keypair.public_key_path}"
            )

    async def _read_installed(self) -> bytes | None:
        """Read the installed public key, or None if nothing is installed.

        Raises:
            CredentialDriftDetectionFailure: If the installed key exists but cannot be read.
        """
        try:
            return await read_key(self.installed_public_key_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CredentialDriftDetectionFailure(
                f"Cannot read installed credential {self.installed_public_key_path}: {e}"
            ) from e

    async def _matches_installed(self, keypair: Keypair) -> bool:
        """Compare the local public key with the installed one byte for byte."""
        try:
            local = await read_key(keypair.public_key_path)
        except OSError as e:
            raise KeyGenerationFailure(f"Public key is unreadable: {e}") from e

        try:
            installed = await self._read_installed()
        except CredentialDriftDetectionFailure as e:
            logger.warning(f"{e}; treating as drift")
            return False

        if installed is None:
            logger.info(f"No credential installed at {self.installed_public_key_path}")
            return False

        if installed != local:
            logger.info(f"Installed credential {self.installed_public_key_path} differs")
            return False

        return True
