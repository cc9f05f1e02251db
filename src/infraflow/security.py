"""Credential acquisition for the Azure clients.

The reconciler authenticates with a managed identity only. Service principal
secrets, certificates and passwords in the environment abort startup.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. The reconciler "
    "authenticates with a managed identity only: remove the variable and assign "
    "a user-assigned managed identity with network and compute contributor "
    "rights on the cluster subscription."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment."""

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to start when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment.

    Args:
        client_id: Client ID of a user-assigned managed identity. If None,
                   the system-assigned identity is used.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
