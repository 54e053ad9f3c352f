"""VM process lifecycle management for the builder VM."""

import asyncio
import json
import logging
import os
import platform
import shlex
import shutil
from pathlib import Path

from .config import BuilderConfig
from .constants import (
    CA_BUNDLE_FILE_NAME,
    CERT_FILE_ENVS,
    CERTS_DIR_NAME,
    CERTS_MOUNT_TAG,
    COMMAND_NOT_FOUND_EXIT_CODE,
    FW_CFG_PREFIX,
    GUEST_CERTS_DIR,
    HOST_CA_BUNDLES,
    INTERRUPTED_EXIT_CODE,
    KEYS_MOUNT_TAG,
    NIX_STORE_MOUNT_TAG,
    QEMU_OPTS_ENV,
    STORE_OVERLAY_FILE_NAME,
)
from .exceptions import BuilderConfigurationError, LaunchFailure
from .models import PortForward, SharedDirectory, StoreIsolationMode, escape_option_value
from .store import StorePath
from .utils import format_command, run_command

logger = logging.getLogger(__name__)


def default_qemu_binary() -> str:
    """QEMU system emulator matching the host architecture."""
    machine = platform.machine().lower()
    arch = "aarch64" if machine in ("arm64", "aarch64") else "x86_64"
    return f"qemu-system-{arch}"


def host_ca_bundle() -> Path | None:
    """The host's trusted CA bundle, if one can be found."""
    for env in CERT_FILE_ENVS:
        cert_file = os.environ.get(env)
        if cert_file:
            return Path(cert_file)

    for candidate in HOST_CA_BUNDLES:
        if Path(candidate).is_file():
            return Path(candidate)
    return None


def exit_code_for(returncode: int) -> int:
    """Map a subprocess return code to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class VMProcess:
    """Launches the builder VM and blocks until it exits."""

    def __init__(self, config: BuilderConfig):
        """Initialize VM process manager.

        Args:
            config: Builder configuration
        """
        self.config = config
        self.working_dir = config.working_directory
        self.qemu_binary = config.qemu_binary or default_qemu_binary()

        self.disk_image = self.working_dir / f"{config.hostname}.qcow2"
        self.store_overlay = self.working_dir / STORE_OVERLAY_FILE_NAME
        self.certs_dir = self.working_dir / CERTS_DIR_NAME

        # VM process state
        self.vm_process: asyncio.subprocess.Process | None = None
        self._output_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._shutdown_requested = False

    @property
    def port_forward(self) -> PortForward:
        return PortForward(host_port=self.config.host_port)

    @property
    def machine_type(self) -> str:
        return "virt" if self.qemu_binary.endswith("aarch64") else "q35"

    def shared_directories(self, keys: StorePath) -> list[SharedDirectory]:
        """Directories exposed to the guest, keys first."""
        shares = [
            SharedDirectory(
                source=keys.path,
                target=self.config.keys_mount_target,
                tag=KEYS_MOUNT_TAG,
                read_only=True,
            )
        ]

        if self.config.store_isolation is StoreIsolationMode.PASSTHROUGH:
            logger.warning("Sharing the host store with the guest; delegated builds may deadlock")
            shares.append(
                SharedDirectory(
                    source=self.config.store_dir,
                    target=str(self.config.store_dir),
                    tag=NIX_STORE_MOUNT_TAG,
                    read_only=False,
                )
            )

        if (self.certs_dir / CA_BUNDLE_FILE_NAME).is_file():
            shares.append(
                SharedDirectory(source=self.certs_dir, target=GUEST_CERTS_DIR, tag=CERTS_MOUNT_TAG)
            )

        return shares

    def guest_settings(self, shares: list[SharedDirectory]) -> list[tuple[str, str]]:
        """Name/value pairs published to the guest through fw_cfg."""
        settings = [
            ("min-free", str(self.config.min_free)),
            ("max-free", str(self.config.max_free)),
            ("store-isolation", self.config.store_isolation.value),
        ]
        settings.extend((f"shared-dirs/{share.tag}", share.target) for share in shares)
        return [(f"{FW_CFG_PREFIX}/{name}", value) for name, value in settings]

    def build_qemu_command(self, keys: StorePath) -> list[str]:
        """Build the QEMU command line from configuration."""
        shares = self.shared_directories(keys)

        cmd = [
            self.qemu_binary,
            "-name",
            self.config.hostname,
            "-machine",
            f"{self.machine_type},accel=hvf:kvm:tcg",
            "-cpu",
            "max",
            "-smp",
            str(self.config.cores),
            "-m",
            str(self.config.memory_size),
            "-nographic",
        ]

        if self.config.firmware:
            cmd.extend(["-bios", str(self.config.firmware)])

        cmd.extend(["-drive", self._drive(self.disk_image)])

        if self.config.store_isolation is StoreIsolationMode.SNAPSHOTTED_IMAGE:
            cmd.extend(["-drive", self._drive(self.store_overlay)])

        for share in shares:
            cmd.extend(["-virtfs", share.to_virtfs()])

        cmd.extend(
            [
                "-netdev",
                f"user,id=user.0,hostfwd={self.port_forward.to_hostfwd()}",
                "-device",
                "virtio-net-pci,netdev=user.0",
            ]
        )

        for name, value in self.guest_settings(shares):
            cmd.extend(["-fw_cfg", f"name={name},string={escape_option_value(value)}"])

        cmd.extend(shlex.split(os.environ.get(QEMU_OPTS_ENV, "")))
        return cmd

    def _drive(self, image: Path) -> str:
        path = escape_option_value(str(image))
        return f"if=virtio,format=qcow2,file={path},cache=writeback,werror=report"

    async def _qemu_img(self, *args: str) -> str:
        try:
            result = await run_command("qemu-img", *args)
        except OSError as e:
            raise LaunchFailure(f"Failed to run qemu-img: {e}", COMMAND_NOT_FOUND_EXIT_CODE) from e

        if not result.ok:
            raise LaunchFailure(
                f"qemu-img {args[0]} failed: {result.diagnostic()}",
                exit_code_for(result.returncode),
            )
        return result.stdout

    async def _prepare_disk_image(self) -> None:
        """Create the guest's root disk as a durable overlay of the guest image."""
        if self.disk_image.exists():
            logger.debug(f"Reusing disk image {self.disk_image}")
            return

        guest_image = self.config.guest_image
        if guest_image is None:
            raise BuilderConfigurationError("No guest-image configured")
        if not guest_image.exists():
            raise BuilderConfigurationError(f"Guest image does not exist: {guest_image}")

        logger.info(f"Creating {self.config.disk_size}MiB disk image {self.disk_image}")
        await self._qemu_img(
            "create",
            "-f",
            "qcow2",
            "-b",
            str(guest_image.resolve()),
            "-F",
            self.config.guest_image_format,
            str(self.disk_image),
            f"{self.config.disk_size}M",
        )

    async def _store_overlay_backing(self) -> Path | None:
        output = await self._qemu_img("info", "--output=json", str(self.store_overlay))
        try:
            info = json.loads(output)
        except json.JSONDecodeError as e:
            raise LaunchFailure(f"Unexpected qemu-img info output: {e}") from e

        backing = info.get("full-backing-filename") or info.get("backing-filename")
        return Path(backing) if backing else None

    async def _prepare_store_overlay(self) -> None:
        """Create the guest's private, writable copy of the host store image."""
        store_image = self.config.store_image
        if store_image is None:
            raise BuilderConfigurationError(
                "store-isolation is snapshotted-image but no store-image is configured"
            )
        if not store_image.exists():
            raise BuilderConfigurationError(f"Store image does not exist: {store_image}")
        store_image = store_image.resolve()

        if self.store_overlay.exists():
            if await self._store_overlay_backing() == store_image:
                logger.debug(f"Reusing store overlay {self.store_overlay}")
                return
            logger.info(f"Store image changed, recreating {self.store_overlay}")
            self.store_overlay.unlink()

        logger.info(f"Creating store overlay {self.store_overlay} on {store_image}")
        await self._qemu_img(
            "create",
            "-f",
            "qcow2",
            "-b",
            str(store_image),
            "-F",
            "raw",
            str(self.store_overlay),
        )

    def prepare_host_certs(self) -> None:
        """Copy the host CA bundle into the directory shared with the guest.

        Only the bundle itself is copied, so nothing else next to it on the host is exposed.
        A stale copy is removed when the host no longer has a bundle.
        """
        bundle = host_ca_bundle()
        target = self.certs_dir / CA_BUNDLE_FILE_NAME

        try:
            if bundle is None or not bundle.is_file():
                logger.warning(f"No host CA bundle found, not sharing certificates: {bundle}")
                target.unlink(missing_ok=True)
                return

            self.certs_dir.mkdir(exist_ok=True)
            shutil.copyfile(bundle, target)
        except OSError as e:
            raise LaunchFailure(f"Failed to copy host CA bundle: {e}") from e

        logger.debug(f"Copied host CA bundle {bundle} to {target}")

    async def _start_vm_process(self, cmd: list[str]) -> None:
        """Start the VM process."""
        if self.vm_process is not None:
            raise LaunchFailure("VM process is already running")

        logger.info(f"Starting VM with command: {format_command(cmd)}")

        kwargs: dict = {"cwd": self.working_dir}
        if self.config.debug_enabled:
            kwargs.update(
                {
                    "stdout": asyncio.subprocess.PIPE,
                    "stderr": asyncio.subprocess.PIPE,
                }
            )

        try:
            self.vm_process = await asyncio.create_subprocess_exec(*cmd, **kwargs)
        except FileNotFoundError as e:
            raise LaunchFailure(
                f"Failed to start VM process: {e}", COMMAND_NOT_FOUND_EXIT_CODE
            ) from e
        except OSError as e:
            raise LaunchFailure(f"Failed to start VM process: {e}", 126) from e

        logger.info(f"VM started with PID {self.vm_process.pid}")

        # Consume output in the background so the pipes never fill up
        if self.config.debug_enabled and self.vm_process.stdout and self.vm_process.stderr:
            self._output_task = asyncio.create_task(self._consume_vm_process_output())

    async def _consume_vm_process_output(self) -> None:
        """Consume VM process stdout/stderr into the log."""
        if not self.vm_process or not self.vm_process.stdout or not self.vm_process.stderr:
            return

        async def read_stream(stream, name):
            while True:
                line = await stream.readline()
                if not line:
                    break
                logger.debug(f"VM {name}: {line.decode(errors='replace').rstrip()}")

        await asyncio.gather(
            read_stream(self.vm_process.stdout, "stdout"),
            read_stream(self.vm_process.stderr, "stderr"),
        )

    async def launch(self, keys: StorePath) -> int:
        """Launch the VM and block until it exits.

        Args:
            keys: Registered keys directory to share with the guest

        Returns:
            0 once the VM has shut down cleanly

        Raises:
            LaunchFailure: If the VM cannot be started or exits with a non-zero status.
        """
        await self._prepare_disk_image()
        if self.config.store_isolation is StoreIsolationMode.SNAPSHOTTED_IMAGE:
            await self._prepare_store_overlay()
        self.prepare_host_certs()

        if self._shutdown_requested:
            self._shutdown_requested = False
            raise LaunchFailure("Shutdown requested, not starting VM", INTERRUPTED_EXIT_CODE)

        cmd = self.build_qemu_command(keys)
        await self._start_vm_process(cmd)

        try:
            returncode = await self.vm_process.wait()
            if self._output_task:
                await self._output_task
            if self._stop_task:
                await self._stop_task
        finally:
            self.vm_process = None
            self._output_task = None
            self._stop_task = None
            self._shutdown_requested = False

        exit_code = exit_code_for(returncode)
        if exit_code != 0:
            raise LaunchFailure(f"VM exited with status {exit_code}", exit_code)

        logger.info("VM shut down normally")
        return 0

    async def stop(self, timeout: int = 30) -> None:
        """Stop the VM gracefully, killing it after `timeout` seconds."""
        process = self.vm_process
        if process is None or process.returncode is not None:
            return

        self._shutdown_requested = True
        process.terminate()
        logger.info(f"Sent SIGTERM to VM process {process.pid}")

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
            logger.info("VM stopped gracefully")
        except asyncio.TimeoutError:
            logger.warning("VM did not stop gracefully, killing...")
            process.kill()
            await process.wait()
            logger.info("VM killed")

    def request_stop(self) -> None:
        """Signal-handler entry point: schedule `stop` on the running loop.

        Before QEMU has started this only records the request, and `launch` refuses to start it.
        """
        if self._shutdown_requested:
            return

        self._shutdown_requested = True
        if not self.is_running:
            return

        # call_soon_threadsafe also wakes the loop out of its selector wait
        asyncio.get_running_loop().call_soon_threadsafe(self._start_stop_task)

    def _start_stop_task(self) -> None:
        self._stop_task = asyncio.create_task(self.stop())

    @property
    def is_running(self) -> bool:
        """Check if VM is running."""
        return self.vm_process is not None and self.vm_process.returncode is None
