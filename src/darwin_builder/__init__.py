"""Darwin builder VM controller package."""

from importlib.metadata import version

from .exceptions import (
    BuilderConfigurationError,
    BuilderError,
    CredentialDriftDetectionFailure,
    KeyGenerationFailure,
    LaunchFailure,
    PrivilegedInstallFailure,
    RegistrationFailure,
)

__version__ = version("darwin-builder")


# Lazy imports keep `python -m darwin_builder.install_credentials` free of the async stack
def _get_runner():
    from .runner import BuilderRunner

    return BuilderRunner


def _get_config():
    from .config import BuilderConfig

    return BuilderConfig


def __getattr__(name):
    if name == "BuilderRunner":
        return _get_runner()
    elif name == "BuilderConfig":
        return _get_config()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "__version__",
    "BuilderRunner",
    "BuilderConfig",
    "BuilderError",
    "BuilderConfigurationError",
    "KeyGenerationFailure",
    "CredentialDriftDetectionFailure",
    "PrivilegedInstallFailure",
    "RegistrationFailure",
    "LaunchFailure",
]
