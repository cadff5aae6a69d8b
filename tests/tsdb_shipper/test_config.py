"""
Tests for configuration loading.
"""

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tsdb_shipper.config import EndpointConfig, HttpConfig, IdentityConfig, OfflineConfig, ShipperConfig, apply_env
from tsdb_shipper.schemas import ResponseHandlerMode


class TestDefaults:
    """Test default values."""

    def test_defaults(self):
        config = ShipperConfig()

        assert config.endpoint.url == "http://localhost:4242"
        assert config.endpoint.check_url == "http://localhost:4242/api/version"
        assert config.http.compression
        assert config.http.retries == 2
        assert config.http.response_handler == ResponseHandlerMode.ERRORS
        assert 1 <= config.http.max_concurrent_flushes <= 32
        assert config.batching.size == 100
        assert config.offline.max_file_size == 2048000
        assert not config.heartbeat.enabled

    def test_probe_timeout_defaults_to_half_request_timeout(self):
        assert EndpointConfig(request_timeout=1500).effective_probe_timeout == 750
        assert EndpointConfig(probe_request_timeout=300).effective_probe_timeout == 300


class TestValidation:
    """Test field validation."""

    def test_url_is_normalized(self):
        assert EndpointConfig(url=" http://tsdb:4242/ ").url == "http://tsdb:4242"

    def test_invalid_url(self):
        with pytest.raises(ValidationError):
            EndpointConfig(url="tsdb:4242")

    def test_check_path_gets_leading_slash(self):
        assert EndpointConfig(check_path="api/health").check_path == "/api/health"

    def test_handler_name_is_parsed(self):
        assert HttpConfig(response_handler="counts").response_handler == ResponseHandlerMode.COUNTS
        with pytest.raises(ValidationError):
            HttpConfig(response_handler="loud")

    @pytest.mark.parametrize("retries", [-1, 11])
    def test_retry_bounds(self, retries):
        with pytest.raises(ValidationError):
            HttpConfig(retries=retries)

    def test_log_level_is_validated(self):
        with pytest.raises(ValidationError):
            ShipperConfig.model_validate({"logging": {"console_level": "chatty"}})


class TestFiles:
    """Test YAML loading and saving."""

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "conf" / "config.yml"
        config = ShipperConfig.model_validate(
            {"endpoint": {"url": "http://tsdb:4242"}, "identity": {"global_tags": {"dc": "east"}}}
        )

        config.save(str(path))
        loaded = ShipperConfig.from_file(str(path))

        assert loaded.endpoint.url == "http://tsdb:4242"
        assert loaded.identity.global_tags == {"dc": "east"}
        assert loaded.http.response_handler == ResponseHandlerMode.ERRORS
        assert yaml.safe_load(path.read_text())["http"]["response_handler"] == "ERRORS"

    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TSDB_ENDPOINT_URL", raising=False)
        config = ShipperConfig.from_file(str(tmp_path / "missing.yml"))
        assert config.endpoint.url == "http://localhost:4242"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("")
        assert ShipperConfig.from_file(str(path)).batching.size == 100

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump({"endpoint": {"url": "http://file:4242"}}))
        monkeypatch.setenv("TSDB_ENDPOINT_URL", "http://env:4242")
        monkeypatch.setenv("TSDB_HTTP_COMPRESSION", "false")

        config = ShipperConfig.from_file(str(path))

        assert config.endpoint.url == "http://env:4242"
        assert not config.http.compression


class TestEnvironment:
    """Test TSDB_* overrides."""

    def test_apply_env_does_not_mutate_input(self):
        data = {"batching": {"size": 5}}

        merged = apply_env(data, {"TSDB_BATCHING_SIZE": "7"})

        assert merged["batching"]["size"] == "7"
        assert data["batching"]["size"] == 5
        assert ShipperConfig.model_validate(merged).batching.size == 7

    def test_global_tags_pairs(self):
        merged = apply_env({}, {"TSDB_IDENTITY_GLOBAL_TAGS": "dc=east, rack = r1,broken,=x"})
        assert merged["identity"]["global_tags"] == {"dc": "east", "rack": "r1"}

    def test_unrelated_variables_ignored(self):
        assert apply_env({}, {"TSDB_NOPE_FIELD": "1", "HOME": "/root"}) == {}


class TestDerived:
    """Test derived values."""

    def test_candidate_dirs(self, tmp_path):
        offline = OfflineConfig(directory=str(tmp_path), app_name="svc")

        dirs = offline.candidate_dirs()

        assert dirs[0] == tmp_path / "svc"
        assert dirs[1] == Path.home() / ".tsdb-offline" / "svc"
        assert dirs[2] == Path(tempfile.gettempdir()) / ".tsdb-metrics" / "svc"

    def test_default_directory_not_repeated(self):
        offline = OfflineConfig(app_name="svc")
        assert len(offline.candidate_dirs()) == 2

    def test_effective_tags(self):
        identity = IdentityConfig(app_name="svc", host_name="h1", global_tags={"host": "override"})
        assert identity.effective_tags() == {"host": "override", "app": "svc"}
