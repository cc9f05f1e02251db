"""Tests for managed identity credential acquisition."""

from __future__ import annotations

import os
from unittest import mock

import pytest

from infraflow.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_managed_identity_credential,
)


class TestSecretlessEnforcement:
    """Tests for credential environment checks."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)

    def test_empty_value_ignored(self) -> None:
        """Test that an empty variable does not count as a credential."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetManagedIdentityCredential:
    """Tests for managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_managed_identity_credential enforces secretless."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("infraflow.security.ManagedIdentityCredential")
    def test_returns_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        mock_credential = mock.Mock()
        mock_credential_class.return_value = mock_credential

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential

    @mock.patch("infraflow.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        mock_credential = mock.Mock()
        mock_credential_class.return_value = mock_credential
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential(client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)
        assert result is mock_credential
