"""Tests for Kubernetes secrets utilities."""

from __future__ import annotations

import base64
from unittest.mock import Mock

import pytest
from conftest import FakeCoreApi
from kubernetes.client.exceptions import ApiException

from service_manager_operator.utils.secrets import (
    SecretNotFoundError,
    create_secret,
    delete_secret,
    get_secret_value,
    read_secret,
    replace_secret_data,
    resolve_sm_credentials,
)

SM_KEYS = {
    "clientid": "id",
    "clientsecret": "secret",
    "sm_url": "https://sm.example.com",
    "tokenurl": "https://auth.example.com",
}


class TestReadSecret:
    """Test cases for reading secrets."""

    def test_get_secret_value_success(self):
        """Test successfully getting a secret value."""
        mock_api = Mock()
        mock_secret = Mock()
        mock_secret.data = {"test-key": base64.b64encode(b"test-value").decode("utf-8")}
        mock_api.read_namespaced_secret.return_value = mock_secret

        result = get_secret_value(mock_api, "default", "test-secret", "test-key")

        assert result == "test-value"
        mock_api.read_namespaced_secret.assert_called_once_with(name="test-secret", namespace="default")

    def test_get_secret_value_missing_secret(self):
        """Test a missing secret is reported by name."""
        with pytest.raises(ValueError, match="Secret 'params' not found in namespace 'default'"):
            get_secret_value(FakeCoreApi(), "default", "params", "key")

    def test_get_secret_value_missing_key(self):
        """Test a missing key is reported by name."""
        api = FakeCoreApi()
        api.add_secret("default", "params", {"other": "x"})

        with pytest.raises(ValueError, match="Key 'key' not found in secret 'params'"):
            get_secret_value(api, "default", "params", "key")

    def test_read_secret_not_found(self):
        """Test a 404 reads as no secret."""
        assert read_secret(FakeCoreApi(), "default", "missing") is None

    def test_read_secret_other_errors_propagate(self):
        """Test errors other than 404 are raised."""
        mock_api = Mock()
        mock_api.read_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ApiException):
            read_secret(mock_api, "default", "creds")


class TestWriteSecret:
    """Test cases for creating, replacing and deleting secrets."""

    def test_create_secret(self):
        """Test data is encoded and metadata is set."""
        api = FakeCoreApi()
        owner = [{"kind": "ServiceBinding", "name": "b1", "uid": "u1"}]

        create_secret(api, "default", "creds", {"user": "admin", "raw": b"\x00\x01"}, labels={"a": "b"}, owner_references=owner)

        secret = api.secrets[("default", "creds")]
        assert secret.type == "Opaque"
        assert secret.metadata.labels == {"a": "b"}
        assert secret.metadata.annotations is None
        assert secret.metadata.owner_references == owner
        assert api.decoded("default", "creds")["user"] == "admin"
        assert base64.b64decode(secret.data["raw"]) == b"\x00\x01"

    def test_replace_secret_data(self):
        """Test data is replaced while labels and annotations are merged."""
        api = FakeCoreApi()
        api.add_secret("default", "creds", {"old": "value"}, labels={"keep": "me"})
        existing = api.read_namespaced_secret(name="creds", namespace="default")

        replace_secret_data(api, existing, {"new": "value"}, labels={"added": "label"}, annotations={"note": "x"})

        secret = api.secrets[("default", "creds")]
        assert api.decoded("default", "creds") == {"new": "value"}
        assert secret.metadata.labels == {"keep": "me", "added": "label"}
        assert secret.metadata.annotations == {"note": "x"}

    def test_delete_secret(self):
        """Test delete reports whether a secret existed."""
        api = FakeCoreApi()
        api.add_secret("default", "creds", {"a": "1"})

        assert delete_secret(api, "default", "creds") is True
        assert delete_secret(api, "default", "creds") is False


class TestResolveSmCredentials:
    """Test cases for resolve_sm_credentials."""

    def test_namespace_secret_first(self):
        """Test a secret in the resource namespace wins."""
        api = FakeCoreApi()
        api.add_secret("team-a", "service-manager-operator", {**SM_KEYS, "clientid": "team"})
        api.add_secret("mgmt", "service-manager-operator", SM_KEYS)

        config = resolve_sm_credentials(api, "team-a", "mgmt")

        assert config.client_id == "team"
        assert config.url == "https://sm.example.com"

    def test_namespace_secrets_disabled(self):
        """Test namespace secrets are skipped when disabled."""
        api = FakeCoreApi()
        api.add_secret("team-a", "service-manager-operator", {**SM_KEYS, "clientid": "team"})
        api.add_secret("mgmt", "service-manager-operator", SM_KEYS)

        config = resolve_sm_credentials(api, "team-a", "mgmt", enable_namespace_secrets=False)

        assert config.client_id == "id"

    def test_prefixed_management_secret(self):
        """Test the namespace specific secret in the management namespace comes next."""
        api = FakeCoreApi()
        api.add_secret("mgmt", "team-a-service-manager-operator", {**SM_KEYS, "clientid": "prefixed"})
        api.add_secret("mgmt", "service-manager-operator", SM_KEYS)

        assert resolve_sm_credentials(api, "team-a", "mgmt").client_id == "prefixed"

    def test_cluster_secret_in_release_namespace(self):
        """Test the cluster wide secret is read from the release namespace."""
        api = FakeCoreApi()
        api.add_secret("mgmt", "service-manager-operator", SM_KEYS)
        api.add_secret("release", "service-manager-operator", {**SM_KEYS, "clientid": "cluster"})

        config = resolve_sm_credentials(api, "team-a", "mgmt", release_namespace="release")

        assert config.client_id == "cluster"

    def test_incomplete_secret_is_skipped(self):
        """Test a secret without all keys does not count."""
        api = FakeCoreApi()
        api.add_secret("team-a", "service-manager-operator", {"clientid": "only"})
        api.add_secret("mgmt", "service-manager-operator", SM_KEYS)

        assert resolve_sm_credentials(api, "team-a", "mgmt").client_id == "id"

    def test_url_and_token_suffix(self):
        """Test the url key and a custom token suffix are accepted."""
        api = FakeCoreApi()
        keys = {k: v for k, v in SM_KEYS.items() if k != "sm_url"}
        api.add_secret("mgmt", "service-manager-operator", {**keys, "url": "https://other", "tokenurlsuffix": "/token"})

        config = resolve_sm_credentials(api, "team-a", "mgmt")

        assert config.url == "https://other"
        assert config.token_url_suffix == "/token"

    def test_not_found(self):
        """Test a namespace without any credentials raises."""
        with pytest.raises(SecretNotFoundError, match="cannot find Service Manager secret for namespace 'team-a'"):
            resolve_sm_credentials(FakeCoreApi(), "team-a", "mgmt")

