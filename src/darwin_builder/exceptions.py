"""Custom exceptions for the darwin builder."""


class BuilderError(Exception):
    """Base exception for all darwin builder errors."""

    pass


class BuilderConfigurationError(BuilderError):
    """Raised when builder configuration is invalid."""

    pass


class KeyGenerationFailure(BuilderError):
    """Raised when the host keypair cannot be generated."""

    pass


class CredentialDriftDetectionFailure(BuilderError):
    """Raised when the installed credential cannot be read for comparison.

    The provisioner treats this as drift rather than aborting.
    """

    pass


class PrivilegedInstallFailure(BuilderError):
    """Raised when the privileged credential installation fails."""

    pass


class RegistrationFailure(BuilderError):
    """Raised when the keys directory cannot be added to the content store."""

    pass


class LaunchFailure(BuilderError):
    """Raised when the VM cannot be started or exits with a non-zero status."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code
