"""Configuration management for the darwin builder."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from .constants import (
    CONFIG_FILE_ENV,
    CORES,
    CREDENTIAL_GROUP,
    DISK_SIZE_MIB,
    HOST_PORT,
    INSTALLED_PRIVATE_KEY_PATH,
    INSTALLED_PUBLIC_KEY_PATH,
    KEY_ALGORITHM,
    KEY_COMMENT,
    KEY_IDENTITY,
    KEYS_DIRECTORY,
    KEYS_ENV,
    KEYS_MOUNT_TARGET,
    MAX_FREE_BYTES,
    MEMORY_SIZE_MIB,
    MIN_FREE_BYTES,
    NIX_STORE_DIR,
    VM_HOST_NAME,
    WORKING_DIRECTORY,
    WORKING_DIRECTORY_ENV,
)
from .exceptions import BuilderConfigurationError
from .models import StoreIsolationMode

logger = logging.getLogger(__name__)

GUEST_IMAGE_FORMATS = ("qcow2", "raw")


class BuilderConfig:
    """Builder VM configuration.

    Values come from, in increasing precedence: built-in defaults, an optional JSON file,
    environment variables, and explicit constructor arguments.
    """

    def __init__(
        self,
        config_path: str | None = None,
        working_directory: str | None = None,
        keys_directory: str | None = None,
        debug: bool | None = None,
    ):
        """Initialize builder configuration.

        Args:
            config_path: Path to JSON configuration file. Falls back to $DARWIN_BUILDER_CONFIG_FILE.
            working_directory: Overrides $DARWIN_BUILDER_WORKING_DIRECTORY and the file value.
            keys_directory: Overrides $KEYS and the file value.
            debug: Overrides the file value.
        """
        config_path = config_path or os.getenv(CONFIG_FILE_ENV)
        self.config_path: Path | None = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = self._load_config()

        if working_directory is None:
            working_directory = os.getenv(WORKING_DIRECTORY_ENV)
        if working_directory is not None:
            self._config["working-directory"] = working_directory

        if keys_directory is None:
            keys_directory = os.getenv(KEYS_ENV)
        if keys_directory is not None:
            self._config["keys"] = keys_directory

        if debug is not None:
            self._config["debug"] = debug

        self._validate_and_store_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file, if one was given."""
        if self.config_path is None:
            return {}

        try:
            with open(self.config_path) as f:
                config = json.load(f)
            logger.debug(f"Loaded configuration from {self.config_path}")
        except FileNotFoundError:
            raise BuilderConfigurationError(f"Configuration file not found: {self.config_path}")
        except json.JSONDecodeError as e:
            raise BuilderConfigurationError(f"Invalid JSON in configuration file: {e}")
        except OSError as e:
            raise BuilderConfigurationError(f"Failed to load configuration: {e}")

        if not isinstance(config, dict):
            raise BuilderConfigurationError("Configuration file must contain a JSON object")
        return config

    def _int_setting(self, key: str, default: int, minimum: int = 1) -> int:
        value = self._config.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise BuilderConfigurationError(
                f"Invalid {key}: {value}. Expected: integer of at least {minimum}"
            )
        return value

    def _string(self, key: str, default: str | None) -> str | None:
        value = self._config.get(key, default)
        if value is not None and (not isinstance(value, str) or not value):
            raise BuilderConfigurationError(f"Invalid {key}: {value!r}. Expected: non-empty string")
        return value

    def _validate_and_store_config(self) -> None:
        """Validate configuration parameters and store validated values."""
        # Sizing
        self._disk_size = self._int_setting("disk-size", DISK_SIZE_MIB)
        self._memory_size = self._int_setting("memory-size", MEMORY_SIZE_MIB, minimum=256)
        self._cores = self._int_setting("cores", CORES)

        # Garbage collection thresholds
        self._min_free = self._int_setting("min-free", MIN_FREE_BYTES, minimum=0)
        self._max_free = self._int_setting("max-free", MAX_FREE_BYTES, minimum=0)
        if self._min_free > self._max_free:
            raise BuilderConfigurationError(
                f"Invalid min-free: {self._min_free}. "
                f"Expected: not more than max-free ({self._max_free})"
            )

        # Validate and store port
        port = self._config.get("host-port", HOST_PORT)
        if isinstance(port, bool) or not isinstance(port, int) or port < 1 or port > 65535:
            raise BuilderConfigurationError(
                f"Invalid host-port: {port}. Expected: integer between 1 and 65535"
            )
        self._host_port = port

        # Validate and store debug
        debug = self._config.get("debug", False)
        if not isinstance(debug, bool):
            raise BuilderConfigurationError(f"Invalid debug setting: {debug}. Expected: boolean")
        self._debug_enabled = debug

        # Directories
        self._working_directory = Path(self._string("working-directory", WORKING_DIRECTORY))
        self._keys = Path(self._string("keys", KEYS_DIRECTORY))

        keys_mount_target = self._string("keys-mount-target", KEYS_MOUNT_TARGET)
        if not keys_mount_target.startswith("/"):
            raise BuilderConfigurationError(
                f"Invalid keys-mount-target: {keys_mount_target}. Expected: absolute guest path"
            )
        self._keys_mount_target = keys_mount_target

        # Store isolation
        isolation = self._config.get("store-isolation", StoreIsolationMode.SNAPSHOTTED_IMAGE.value)
        try:
            self._store_isolation = StoreIsolationMode(isolation)
        except ValueError:
            choices = ", ".join(mode.value for mode in StoreIsolationMode)
            raise BuilderConfigurationError(
                f"Invalid store-isolation: {isolation}. Expected one of: {choices}"
            )
        self._store_dir = Path(self._string("store-dir", NIX_STORE_DIR))
        store_image = self._string("store-image", None)
        self._store_image = Path(store_image) if store_image else None

        # Guest image and engine
        guest_image = self._string("guest-image", None)
        self._guest_image = Path(guest_image) if guest_image else None

        guest_image_format = self._config.get("guest-image-format", "qcow2")
        if guest_image_format not in GUEST_IMAGE_FORMATS:
            raise BuilderConfigurationError(
                f"Invalid guest-image-format: {guest_image_format}. "
                f"Expected one of: {', '.join(GUEST_IMAGE_FORMATS)}"
            )
        self._guest_image_format = guest_image_format

        firmware = self._string("firmware", None)
        self._firmware = Path(firmware) if firmware else None
        self._qemu_binary = self._string("qemu-binary", None)
        self._hostname = self._string("hostname", VM_HOST_NAME)

        # Credentials
        self._installed_private_key = Path(
            self._string("installed-private-key", INSTALLED_PRIVATE_KEY_PATH)
        )
        self._installed_public_key = Path(
            self._string("installed-public-key", INSTALLED_PUBLIC_KEY_PATH)
        )
        self._credential_group = self._string("credential-group", CREDENTIAL_GROUP)
        self._key_identity = self._string("key-identity", KEY_IDENTITY)
        self._key_comment = self._string("key-comment", KEY_COMMENT)

    @property
    def disk_size(self) -> int:
        """Get disk size in MiB."""
        return self._disk_size

    @property
    def memory_size(self) -> int:
        """Get memory size in MiB."""
        return self._memory_size

    @property
    def cores(self) -> int:
        """Get number of CPU cores."""
        return self._cores

    @property
    def min_free(self) -> int:
        """Free bytes at which the guest starts garbage collection."""
        return self._min_free

    @property
    def max_free(self) -> int:
        """Free bytes at which the guest stops garbage collection."""
        return self._max_free

    @property
    def host_port(self) -> int:
        """Get the host port forwarded to guest SSH."""
        return self._host_port

    @property
    def debug_enabled(self) -> bool:
        """Check if debug mode is enabled."""
        return self._debug_enabled

    @property
    def working_directory(self) -> Path:
        """Get working directory."""
        return self._working_directory

    @property
    def keys_directory(self) -> Path:
        """Get keys directory. Relative paths are resolved against the working directory."""
        if self._keys.is_absolute():
            return self._keys
        return self._working_directory / self._keys

    @property
    def keys_mount_target(self) -> str:
        return self._keys_mount_target

    @property
    def store_isolation(self) -> StoreIsolationMode:
        return self._store_isolation

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    @property
    def store_image(self) -> Path | None:
        """Image of the host store the guest's private store is snapshotted from."""
        return self._store_image

    @property
    def guest_image(self) -> Path | None:
        return self._guest_image

    @property
    def guest_image_format(self) -> str:
        return self._guest_image_format

    @property
    def firmware(self) -> Path | None:
        return self._firmware

    @property
    def qemu_binary(self) -> str | None:
        return self._qemu_binary

    @property
    def hostname(self) -> str:
        return self._hostname

    @property
    def installed_private_key(self) -> Path:
        return self._installed_private_key

    @property
    def installed_public_key(self) -> Path:
        return self._installed_public_key

    @property
    def credential_group(self) -> str:
        return self._credential_group

    @property
    def key_identity(self) -> str:
        return self._key_identity

    @property
    def key_algorithm(self) -> str:
        return KEY_ALGORITHM

    @property
    def key_comment(self) -> str:
        return self._key_comment

    def __repr__(self) -> str:
        """String representation of configuration."""
        return ", ".join(
            [
                f"BuilderConfig(cores={self.cores}",
                f"debug={self.debug_enabled}",
                f"disk_size={self.disk_size}MiB",
                f"guest_image={self.guest_image}",
                f"host_port={self.host_port}",
                f"keys_directory={self.keys_directory}",
                f"keys_mount_target={self.keys_mount_target}",
                f"max_free={self.max_free}",
                f"memory_size={self.memory_size}MiB",
                f"min_free={self.min_free}",
                f"store_image={self.store_image}",
                f"store_isolation={self.store_isolation.value}",
                f"working_directory={self.working_directory})",
            ]
        )
