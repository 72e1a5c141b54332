"""
Unit tests for engine provider selection.
"""
import httpx
import pytest

from dockit.ENGINE.errors import ConfigurationError
from dockit.PROVIDERS.provider_selector import (
    LocalProvider,
    ProviderSelector,
    RemoteProvider,
)


class TestProviderSelector:
    """Tests for ProviderSelector.select."""

    def test_explicit_host_uses_remote(self):
        provider = ProviderSelector(environ={"DOCKER_HOST": "unix:///var/run/docker.sock"}).select("ci-engine", 4243)
        assert isinstance(provider, RemoteProvider)
        assert provider.base_url == "http://ci-engine:4243"

    def test_explicit_host_default_port(self):
        provider = ProviderSelector(environ={}).select("ci-engine")
        assert provider.port == 2375

    def test_docker_host_from_environment(self):
        provider = ProviderSelector(environ={"DOCKER_HOST": "tcp://10.1.2.3:2380"}).select()
        assert isinstance(provider, LocalProvider)
        assert provider.host == "10.1.2.3"
        assert provider.base_url == "http://10.1.2.3:2380"

    def test_default_engine(self):
        provider = ProviderSelector(environ={}).select()
        assert provider.base_url == "http://127.0.0.1:2375"

    def test_port_without_host_is_ignored(self, caplog):
        provider = ProviderSelector(environ={}).select(docker_port=4243)
        assert provider.port == 2375
        assert "dockerPort is ignored" in caplog.text

    def test_env_file_fills_gaps(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DOCKER_HOST", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("DOCKER_HOST=tcp://from-dotenv:2375\n")
        provider = ProviderSelector(env_file=str(env_file)).select()
        assert provider.host == "from-dotenv"

    def test_api_version_applied(self):
        selector = ProviderSelector(environ={"DOCKER_API_VERSION": "1.41"})
        with selector.create_client() as client:
            assert client._prefix == "/v1.41"


class TestLocalProvider:
    """Tests for DOCKER_HOST parsing."""

    def test_unix_socket(self):
        provider = LocalProvider("unix:///var/run/docker.sock")
        assert provider.socket_path == "/var/run/docker.sock"
        assert provider.host == "localhost"
        assert provider.base_url == "http://localhost"

    def test_unix_socket_client(self):
        with LocalProvider("unix:///var/run/docker.sock").create_client() as client:
            assert client.host == "localhost"
            assert isinstance(client._client._transport, httpx.HTTPTransport)

    def test_tcp_without_port(self):
        assert LocalProvider("tcp://docker.local").port == 2375

    def test_https_defaults_to_tls_port(self):
        provider = LocalProvider("https://docker.local")
        assert provider.base_url == "https://docker.local:2376"

    @pytest.mark.parametrize("docker_host", ["ssh://user@host", "unix://", "tcp://"])
    def test_invalid(self, docker_host):
        with pytest.raises(ConfigurationError):
            LocalProvider(docker_host)
