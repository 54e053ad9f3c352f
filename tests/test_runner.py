"""End-to-end scenarios for the builder runner with external tools replaced."""

import signal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import write_keypair
from darwin_builder.credentials import CredentialProvisioner
from darwin_builder.exceptions import BuilderConfigurationError, KeyGenerationFailure, LaunchFailure
from darwin_builder.runner import BuilderRunner
from darwin_builder.signal_manager import SignalManager
from darwin_builder.store import ContentStore, StorePath
from darwin_builder.utils import CommandResult
from darwin_builder.vm_process import VMProcess

KEYS = StorePath(Path("/nix/store/0123abcd-keys"))


@pytest.fixture
def runner_for(fake_installer):
    def _make(config, vm_process=None):
        provisioner = CredentialProvisioner(
            installer=fake_installer,
            installed_public_key_path=config.installed_public_key,
        )
        store = ContentStore()
        store.register = AsyncMock(return_value=KEYS)
        return BuilderRunner(config, SignalManager(), provisioner, store, vm_process)

    return _make


def vm_process_exiting(config, returncode: int = 0) -> tuple[VMProcess, AsyncMock]:
    vm = VMProcess(config)
    process = MagicMock(pid=4242, returncode=None, stdout=None, stderr=None)
    process.wait = AsyncMock(return_value=returncode)
    return vm, AsyncMock(return_value=process)


class TestRun:
    @pytest.mark.asyncio
    async def test_fresh_working_directory(
        self, make_config, runner_for, tmp_path, fake_installer, fake_keygen
    ):
        config = make_config(**{"working-directory": str(tmp_path / "fresh"), "store-isolation": "passthrough"})
        vm, spawn = vm_process_exiting(config)
        runner = runner_for(config, vm)

        with patch("darwin_builder.credentials.run_command", fake_keygen), patch(
            "darwin_builder.vm_process.run_command", AsyncMock(return_value=CommandResult(0, "", ""))
        ), patch("darwin_builder.vm_process.asyncio.create_subprocess_exec", spawn):
            assert await runner.run() == 0

        keys_dir = tmp_path / "fresh" / "keys"
        assert (keys_dir / "builder_ed25519").exists()
        assert (keys_dir / "builder_ed25519.pub").exists()
        assert len(fake_keygen.calls) == 1
        assert fake_installer.calls == [keys_dir]
        runner.store.register.assert_awaited_once_with(keys_dir)

        cmd = list(spawn.await_args.args)
        assert "user,id=user.0,hostfwd=tcp:127.0.0.1:31022-:22" in cmd
        assert "local,path=/nix/store/0123abcd-keys,security_model=none,mount_tag=keys,readonly=on" in cmd

    @pytest.mark.asyncio
    async def test_matching_keys_skip_generation_and_install(
        self, make_config, runner_for, keys_dir, fake_installer, fake_keygen
    ):
        fake_installer.public_key_path.write_bytes(write_keypair(keys_dir))
        config = make_config()
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock(return_value=0)
        runner = runner_for(config, vm)

        with patch("darwin_builder.credentials.run_command", fake_keygen):
            assert await runner.run() == 0

        assert fake_keygen.calls == []
        assert fake_installer.calls == []
        runner.store.register.assert_awaited_once_with(keys_dir)
        vm.launch.assert_awaited_once_with(KEYS)

    @pytest.mark.asyncio
    async def test_corrupt_keys_are_regenerated(self, make_config, runner_for, keys_dir, fake_keygen):
        (keys_dir / "builder_ed25519").write_text("stray")
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock(return_value=0)
        runner = runner_for(make_config(), vm)

        with patch("darwin_builder.credentials.run_command", fake_keygen):
            await runner.run()

        assert (keys_dir / "builder_ed25519").read_text() != "stray"
        assert (keys_dir / "builder_ed25519.pub").exists()

    @pytest.mark.asyncio
    async def test_launch_failure_propagates_exit_code(self, make_config, runner_for, working_dir, keys_dir):
        config = make_config(**{"store-isolation": "passthrough"})
        (working_dir / "darwin-builder.qcow2").write_bytes(b"disk")
        config.installed_public_key.write_bytes(write_keypair(keys_dir))
        vm, spawn = vm_process_exiting(config, returncode=2)
        runner = runner_for(config, vm)

        with patch("darwin_builder.vm_process.asyncio.create_subprocess_exec", spawn):
            with pytest.raises(LaunchFailure) as excinfo:
                await runner.run()

        assert excinfo.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_provisioning_failure_stops_before_registration(self, make_config, runner_for):
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock()
        runner = runner_for(make_config(), vm)
        runner.provisioner.ensure = AsyncMock(side_effect=KeyGenerationFailure("ssh-keygen failed"))

        with pytest.raises(KeyGenerationFailure):
            await runner.run()

        runner.store.register.assert_not_awaited()
        vm.launch.assert_not_awaited()


class TestSteps:
    @pytest.mark.asyncio
    async def test_add_keys_creates_directories(self, make_config, runner_for, tmp_path, fake_keygen):
        config = make_config(**{"working-directory": str(tmp_path / "a" / "b"), "keys": "creds"})
        runner = runner_for(config, MagicMock(spec=VMProcess))

        with patch("darwin_builder.credentials.run_command", fake_keygen):
            keypair = await runner.add_keys()

        assert keypair.keys_dir == tmp_path / "a" / "b" / "creds"
        assert keypair.is_complete
        runner.store.register.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_builder_skips_provisioning(self, make_config, runner_for):
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock(return_value=0)
        runner = runner_for(make_config(), vm)
        runner.provisioner.ensure = AsyncMock()

        assert await runner.run_builder() == 0

        runner.provisioner.ensure.assert_not_awaited()
        vm.launch.assert_awaited_once_with(KEYS)

    @pytest.mark.asyncio
    async def test_signal_handler_registered_only_while_running(self, make_config, runner_for):
        config = make_config()
        vm = VMProcess(config)
        seen = []

        async def launch(keys):
            seen.append(vm.request_stop in runner.signal_manager._handlers)
            return 0

        vm.launch = launch
        runner = runner_for(config, vm)

        await runner.run_builder()

        assert seen == [True]
        assert runner.signal_manager._handlers == set()


class TestShutdownBeforeLaunch:
    @pytest.mark.asyncio
    async def test_signal_during_provisioning_stops_before_registration(self, make_config, runner_for):
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock(return_value=0)
        runner = runner_for(make_config(), vm)

        async def interrupted_ensure(keys_dir):
            runner.signal_manager._handle_signal(signal.SIGINT, None)

        runner.provisioner.ensure = interrupted_ensure

        with pytest.raises(LaunchFailure, match="Shutdown requested") as excinfo:
            await runner.run()

        assert excinfo.value.exit_code == 130
        runner.store.register.assert_not_awaited()
        vm.launch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signal_during_registration_stops_before_launch(self, make_config, runner_for):
        vm = MagicMock(spec=VMProcess)
        vm.launch = AsyncMock(return_value=0)
        runner = runner_for(make_config(), vm)

        async def interrupted_register(keys_dir):
            runner.signal_manager._handle_signal(signal.SIGTERM, None)
            return KEYS

        runner.store.register = AsyncMock(side_effect=interrupted_register)

        with pytest.raises(LaunchFailure) as excinfo:
            await runner.run_builder()

        assert excinfo.value.exit_code == 130
        runner.store.register.assert_awaited_once()
        vm.launch.assert_not_awaited()


class TestDirectories:
    def test_working_directory_under_a_file(self, make_config, runner_for, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        runner = runner_for(make_config(**{"working-directory": str(blocker / "sub")}), MagicMock(spec=VMProcess))

        with pytest.raises(BuilderConfigurationError, match="Cannot create builder directories"):
            runner.prepare_directories()

    def test_keys_path_is_a_file(self, make_config, runner_for, working_dir):
        (working_dir / "keys").write_text("")
        runner = runner_for(make_config(), MagicMock(spec=VMProcess))

        with pytest.raises(BuilderConfigurationError):
            runner.prepare_directories()
