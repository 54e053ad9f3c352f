"""CLI entry points for the darwin builder."""

import argparse
import asyncio
import logging
import sys

from .config import BuilderConfig
from .constants import INTERRUPTED_EXIT_CODE
from .exceptions import LaunchFailure
from .runner import BuilderRunner
from .signal_manager import SignalManager


def setup_logging(debug: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_args(prog: str, description: str, argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        "--working-directory",
        help="Directory for keys and disk images (default: $DARWIN_BUILDER_WORKING_DIRECTORY or .)",
    )
    parser.add_argument(
        "--keys",
        help="Keys directory, relative to the working directory (default: $KEYS or ./keys)",
    )
    parser.add_argument(
        "--config",
        help="JSON configuration file (default: $DARWIN_BUILDER_CONFIG_FILE)",
    )
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    return parser.parse_args(argv)


async def main(step: str, args: argparse.Namespace) -> int:
    """Run one builder step and map its outcome to an exit code."""
    signal_manager = SignalManager()

    try:
        config = BuilderConfig(
            config_path=args.config,
            working_directory=args.working_directory,
            keys_directory=args.keys,
            debug=args.debug,
        )

        setup_logging(config.debug_enabled)
        logging.debug(f"Loaded {config}")

        signal_manager.setup_signal_handlers()

        runner = BuilderRunner(config, signal_manager)
        if step == "add-keys":
            await runner.add_keys()
            return 0
        if step == "run-builder":
            return await runner.run_builder()
        return await runner.run()

    except LaunchFailure as e:
        logging.error(f"Fatal error: {e}")
        return e.exit_code
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        return 1
    finally:
        signal_manager.cleanup()


def _cli(step: str, description: str) -> None:
    args = parse_args(step, description)
    try:
        exit_code = asyncio.run(main(step, args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        sys.exit(INTERRUPTED_EXIT_CODE)


def create_builder_main() -> None:
    """Entry point for `create-builder`."""
    _cli("create-builder", "Provision credentials and launch the builder VM.")


def add_keys_main() -> None:
    """Entry point for `add-keys`."""
    _cli("add-keys", "Generate and install the builder keypair.")


def run_builder_main() -> None:
    """Entry point for `run-builder`."""
    _cli("run-builder", "Launch the builder VM with already provisioned keys.")


if __name__ == "__main__":
    create_builder_main()
