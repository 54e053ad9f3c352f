"""Content-addressed handoff of the keys directory through the Nix store."""

import logging
from dataclasses import dataclass
from pathlib import Path

from .constants import KEY_ALGORITHM, KEY_IDENTITY, NIX_STORE_DIR
from .exceptions import RegistrationFailure
from .keypair import Keypair
from .utils import run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorePath:
    """Immutable reference to a path inside the store."""

    path: Path

    def __str__(self) -> str:
        return str(self.path)


class ContentStore:
    """Registers directories in the Nix store so later steps can reference them by content."""

    def __init__(
        self,
        store_dir: Path = Path(NIX_STORE_DIR),
        identity: str = KEY_IDENTITY,
        algorithm: str = KEY_ALGORITHM,
        nix_store: str = "nix-store",
    ):
        self.store_dir = Path(store_dir)
        self.identity = identity
        self.algorithm = algorithm
        self.nix_store = nix_store

    def _validate_source(self, keys_dir: Path) -> None:
        if not keys_dir.is_dir():
            raise RegistrationFailure(f"Keys directory does not exist: {keys_dir}")

        keypair = Keypair.in_directory(keys_dir, self.identity, self.algorithm)
        if not keypair.is_complete:
            raise RegistrationFailure(
                f"Keys directory does not hold a complete keypair: {keys_dir}"
            )

    async def register(self, keys_dir: Path) -> StorePath:
        """Add `keys_dir` to the store and return the resulting store path.

        Raises:
            RegistrationFailure: If the directory is missing or incomplete, or the store rejects it.
        """
        keys_dir = Path(keys_dir)
        self._validate_source(keys_dir)

        try:
            result = await run_command(self.nix_store, "--add", str(keys_dir))
        except OSError as e:
            raise RegistrationFailure(f"Failed to run {self.nix_store}: {e}") from e

        if not result.ok:
            raise RegistrationFailure(f"{self.nix_store} --add failed: {result.diagnostic()}")

        lines = result.stdout.strip().splitlines()
        if not lines:
            raise RegistrationFailure(f"{self.nix_store} --add printed no store path")

        path = Path(lines[-1].strip())
        if path.parent != self.store_dir:
            raise RegistrationFailure(
                f"{self.nix_store} returned a path outside {self.store_dir}: {path}"
            )

        logger.info(f"Registered {keys_dir} as {path}")
        return StorePath(path)
