"""Host identity keypair kept in the keys directory."""

import logging
from dataclasses import dataclass
from pathlib import Path

from .constants import KEY_ALGORITHM, KEY_COMMENT, KEY_IDENTITY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Keypair:
    """An SSH keypair stored as `{identity}_{algorithm}` and `{identity}_{algorithm}.pub`."""

    private_key_path: Path
    public_key_path: Path
    algorithm: str = KEY_ALGORITHM
    comment: str = KEY_COMMENT

    @classmethod
    def in_directory(
        cls,
        keys_dir: Path,
        identity: str = KEY_IDENTITY,
        algorithm: str = KEY_ALGORITHM,
        comment: str = KEY_COMMENT,
    ) -> "Keypair":
        private_key_path = Path(keys_dir) / f"{identity}_{algorithm}"
        return cls(
            private_key_path=private_key_path,
            public_key_path=private_key_path.with_name(f"{private_key_path.name}.pub"),
            algorithm=algorithm,
            comment=comment,
        )

    @property
    def keys_dir(self) -> Path:
        return self.private_key_path.parent

    @property
    def is_complete(self) -> bool:
        """Both halves are present."""
        return self.private_key_path.exists() and self.public_key_path.exists()

    @property
    def is_absent(self) -> bool:
        """Neither half is present."""
        return not self.private_key_path.exists() and not self.public_key_path.exists()

    def discard(self) -> None:
        """Delete whichever halves exist."""
        for path in (self.private_key_path, self.public_key_path):
            if path.exists():
                logger.info(f"Removing stray key file {path}")
            path.unlink(missing_ok=True)

    def is_well_formed(self, public_key: bytes) -> bool:
        """Check that public key content is a single OpenSSH line of this keypair's algorithm."""
        fields = public_key.strip().split()
        return len(fields) >= 2 and fields[0] == f"ssh-{self.algorithm}".encode()
