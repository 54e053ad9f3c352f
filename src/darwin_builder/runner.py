"""Darwin builder runner."""

import logging
from pathlib import Path

from .config import BuilderConfig
from .constants import INTERRUPTED_EXIT_CODE
from .credentials import CredentialProvisioner
from .exceptions import BuilderConfigurationError, LaunchFailure
from .keypair import Keypair
from .privileged import SudoInstallCredentials
from .signal_manager import SignalManager
from .store import ContentStore
from .vm_process import VMProcess

logger = logging.getLogger(__name__)


class BuilderRunner:
    """Sequences credential provisioning, store registration and VM launch."""

    def __init__(
        self,
        config: BuilderConfig,
        signal_manager: SignalManager | None = None,
        provisioner: CredentialProvisioner | None = None,
        store: ContentStore | None = None,
        vm_process: VMProcess | None = None,
    ):
        self.config = config
        self.signal_manager = signal_manager or SignalManager()

        self.provisioner = provisioner or CredentialProvisioner(
            installer=SudoInstallCredentials(
                private_key_path=config.installed_private_key,
                public_key_path=config.installed_public_key,
                group=config.credential_group,
                key_name=f"{config.key_identity}_{config.key_algorithm}",
            ),
            installed_public_key_path=config.installed_public_key,
            identity=config.key_identity,
            algorithm=config.key_algorithm,
            comment=config.key_comment,
        )
        self.store = store or ContentStore(
            store_dir=config.store_dir,
            identity=config.key_identity,
            algorithm=config.key_algorithm,
        )
        self.vm_process = vm_process or VMProcess(config)

    def prepare_directories(self) -> Path:
        """Create the working and keys directories if needed and return the keys directory."""
        keys_dir = self.config.keys_directory
        try:
            self.config.working_directory.mkdir(parents=True, exist_ok=True)
            keys_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuilderConfigurationError(f"Cannot create builder directories: {e}") from e
        return keys_dir

    def _check_shutdown(self) -> None:
        if self.signal_manager.is_shutdown_requested():
            raise LaunchFailure("Shutdown requested, not starting VM", INTERRUPTED_EXIT_CODE)

    async def add_keys(self) -> Keypair:
        """Make sure the builder keypair exists and is installed."""
        keys_dir = self.prepare_directories()
        return await self.provisioner.ensure(keys_dir)

    async def run_builder(self) -> int:
        """Register the keys directory and run the VM until it exits."""
        self._check_shutdown()
        keys = await self.store.register(self.config.keys_directory)

        # A signal that arrived before the VM existed has no process to stop
        self._check_shutdown()

        self.signal_manager.add_shutdown_handler(self.vm_process.request_stop)
        try:
            return await self.vm_process.launch(keys)
        finally:
            self.signal_manager.remove_shutdown_handler(self.vm_process.request_stop)

    async def run(self) -> int:
        """Provision credentials, register them and launch the VM."""
        logger.info(f"Starting builder in {self.config.working_directory}")
        await self.add_keys()
        return await self.run_builder()
