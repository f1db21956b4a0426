"""
Unit tests for shared configuration, errors and logging context.
"""

import pytest

from shared.config import get_config
from shared.errors import AuthorizationError, NotFoundError, StoreOperationError, VideoHubException
from shared.logging import clear_context, request_id_var, set_request_id, set_user_context, user_id_var
from shared.test_helpers import test_environment


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self, monkeypatch):
        for name in test_environment.get_mock_config():
            monkeypatch.delenv(name, raising=False)

        config = get_config("videos", 8000)

        assert config.cache_connect_timeout == 5.0
        assert config.cache_max_reconnect_attempts == 3
        assert config.cache_coalesce_misses is False
        assert config.redis_url is None

    def test_environment_overrides(self, monkeypatch):
        for name, value in test_environment.get_mock_config().items():
            monkeypatch.setenv(name, value)
        monkeypatch.setenv("VIDEOHUB_CACHE_TTL_OVERRIDES", '{"trending": 60}')

        config = get_config("videos", 8000)

        assert config.env == "test"
        assert config.redis_url == "redis://localhost:6379/0"
        assert config.admin_api_key == "admin-secret"
        assert config.cache_connect_timeout == pytest.approx(0.2)
        assert config.cache_ttl_overrides == {"trending": 60}

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("VIDEOHUB_ENV", "production")

        assert get_config("videos", 8000, env="test").env == "test"


class TestErrors:
    """Test cases for error types."""

    def test_status_codes(self):
        assert AuthorizationError().status_code == 403
        assert NotFoundError("video", "v1").status_code == 404
        assert VideoHubException("BAD", "bad").status_code == 400

    def test_not_found_response(self):
        response = NotFoundError("video", "v1").to_response()

        assert response.code == "NOT_FOUND"
        assert response.message == "video not found"
        assert response.details == {"id": "v1"}

    def test_cache_errors_carry_operation_and_key(self):
        error = StoreOperationError("get", "timed out", "video:v1")

        assert error.operation == "get"
        assert error.key == "video:v1"
        assert str(error) == "timed out"


class TestLoggingContext:
    """Test cases for correlation context."""

    def test_request_and_user_context(self):
        request_id = set_request_id()
        set_user_context("u1")

        assert request_id_var.get() == request_id
        assert user_id_var.get() == "u1"

        clear_context()

        assert request_id_var.get() is None
        assert user_id_var.get() is None
