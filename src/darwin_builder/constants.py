"""
Constants for the darwin builder.

These mirror the values baked into the NixOS builder profile. Every path and name here is only a
default; `BuilderConfig` accepts an override for each of them.
"""

WORKING_DIRECTORY = "."
KEYS_DIRECTORY = "./keys"

# Key material
KEY_IDENTITY = "builder"
KEY_ALGORITHM = "ed25519"
KEY_COMMENT = "builder@localhost"

# System-installed credential
INSTALLED_PRIVATE_KEY_PATH = "/etc/nix/builder_ed25519"
INSTALLED_PUBLIC_KEY_PATH = "/etc/nix/builder_ed25519.pub"
CREDENTIAL_GROUP = "nixbld"

# VM sizing
DISK_SIZE_MIB = 20 * 1024
MEMORY_SIZE_MIB = 3 * 1024
CORES = 1
MIN_FREE_BYTES = 1024 * 1024 * 1024
MAX_FREE_BYTES = 3 * 1024 * 1024 * 1024

# Networking
HOST_PORT = 31022
GUEST_SSH_PORT = 22

# Guest surface
VM_HOST_NAME = "darwin-builder"
KEYS_MOUNT_TARGET = "/var/keys"
KEYS_MOUNT_TAG = "keys"
NIX_STORE_MOUNT_TAG = "nix-store"
CERTS_MOUNT_TAG = "certs"
FW_CFG_PREFIX = "opt/org.nixos.builder"

# Host store
NIX_STORE_DIR = "/nix/store"
STORE_OVERLAY_FILE_NAME = "nix-store.qcow2"

# Host certificates
HOST_CA_BUNDLES = ("/etc/ssl/certs/ca-certificates.crt", "/etc/ssl/cert.pem")
CERTS_DIR_NAME = "certs"
CA_BUNDLE_FILE_NAME = "ca-certificates.crt"
GUEST_CERTS_DIR = "/etc/ssl/certs"

# Environment variables
CONFIG_FILE_ENV = "DARWIN_BUILDER_CONFIG_FILE"
WORKING_DIRECTORY_ENV = "DARWIN_BUILDER_WORKING_DIRECTORY"
KEYS_ENV = "KEYS"
QEMU_OPTS_ENV = "QEMU_OPTS"
CERT_FILE_ENVS = ("NIX_SSL_CERT_FILE", "SSL_CERT_FILE")

# Exit status used when a tool cannot be executed at all
COMMAND_NOT_FOUND_EXIT_CODE = 127

# Exit status after SIGINT or SIGTERM
INTERRUPTED_EXIT_CODE = 130
