"""Tests for common utilities."""

import json
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from libs.common.auth import AuthManager, Principal, get_current_principal
from libs.common.config import BaseConfig, GatewayConfig, WorkerConfig, get_config
from libs.common.events import EventPublisher, JobCompletedEvent, JobSubmittedEvent, publish_safely
from libs.common.logging import configure_logging, job_log_context
from libs.common.metrics import MetricsCollector
from libs.common.security import InputSanitizer, SecurityHeaders

TEST_SECRET = "unit-test-secret-key-0123456789abcdef"


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.ml_env == "local"
    assert config.ml_log_level == "INFO"
    assert config.ml_queue_backend == "memory"
    assert config.ml_ledger_backend == "memory"


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv("ML_QUEUE_VISIBILITY_TIMEOUT", "45")
    monkeypatch.setenv("ML_INFERENCE_BACKEND", "comfyui")
    config = BaseConfig()
    assert config.ml_queue_visibility_timeout == 45
    assert config.ml_inference_backend == "comfyui"


def test_service_configs():
    """Test service-specific configuration."""
    assert GatewayConfig().ml_gateway_port == 9010
    assert WorkerConfig().ml_capacity_preference == "spot"
    assert isinstance(get_config("worker"), WorkerConfig)
    assert type(get_config("unknown")) is BaseConfig


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    with job_log_context(job_id="job-1", tenant_id="tenant-a"):
        pass


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service")
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/test", 200, 0.1)
    collector.record_job_submitted("sdxl/base.safetensors")
    collector.record_job_processed("succeeded", 1.5)
    collector.set_queue_depth("genai_jobs", visible=3, in_flight=1)
    collector.record_spot_fallback()

    metrics = collector.get_metrics()
    assert isinstance(metrics, str)
    assert "http_requests_total" in metrics
    assert "platform_jobs_processed_total" in metrics
    assert "platform_spot_fallbacks_total" in metrics


def test_event_serialization():
    event = JobCompletedEvent(job_id="job-1", tenant_id="tenant-a", ledger_sequence=3, asset_keys=["outputs/job-1/0.png"])
    payload = json.loads(event.to_json())
    assert payload["event_type"] == "platform.job.completed.v1"
    assert payload["ledger_sequence"] == 3
    assert payload["timestamp"] > 0


def test_event_publisher_uses_channel_prefix():
    """Test event publisher."""
    publisher = EventPublisher("redis://localhost:6379", channel_prefix="test_events")
    publisher.redis_client = MagicMock()

    event = JobSubmittedEvent(job_id="job-1", tenant_id="tenant-a", user_id="user-1", model_id="m")
    publisher.publish(event)

    channel, message = publisher.redis_client.publish.call_args[0]
    assert channel == "test_events:platform.job.submitted.v1"
    assert json.loads(message)["job_id"] == "job-1"


def test_publish_safely_swallows_redis_errors():
    publisher = EventPublisher("redis://localhost:6379", max_retries=1)
    publisher.redis_client = MagicMock()
    publisher.redis_client.publish.side_effect = redis.ConnectionError("down")

    publish_safely(publisher, JobSubmittedEvent(job_id="job-1", tenant_id="t", user_id="u", model_id="m"))
    publish_safely(None, JobSubmittedEvent(job_id="job-1", tenant_id="t", user_id="u", model_id="m"))


class TestAuthManager:
    """Bearer token handling."""

    @pytest.fixture
    def manager(self):
        return AuthManager(secret_key=TEST_SECRET, tenant_claim="custom:tenant_id")

    def test_round_trip_principal(self, manager):
        token = manager.create_access_token("user-1", "tenant-a", scopes=["jobs", "admin"])
        principal = manager.authenticate(token)
        assert principal == Principal(user_id="user-1", tenant_id="tenant-a", scopes=frozenset({"jobs", "admin"}))
        assert principal.has_scope("anything")

    def test_expired_token_rejected(self, manager):
        token = manager.create_access_token("user-1", "tenant-a", expires_delta=timedelta(seconds=-5))
        with pytest.raises(HTTPException) as exc_info:
            manager.verify_token(token)
        assert exc_info.value.status_code == 401

    def test_wrong_secret_rejected(self, manager):
        token = AuthManager(secret_key=TEST_SECRET[::-1]).create_access_token("user-1", "tenant-a")
        with pytest.raises(HTTPException) as exc_info:
            manager.authenticate(token)
        assert exc_info.value.status_code == 401

    def test_missing_tenant_claim_rejected(self, manager):
        # Issued with the default claim name, so the configured claim is absent.
        token = AuthManager(secret_key=TEST_SECRET).create_access_token("user-1", "tenant-a")
        with pytest.raises(HTTPException):
            manager.authenticate(token)

    def test_audience_enforced(self):
        issuer = AuthManager(secret_key=TEST_SECRET, audience="other-api")
        verifier = AuthManager(secret_key=TEST_SECRET, audience="genai-api")
        with pytest.raises(HTTPException):
            verifier.verify_token(issuer.create_access_token("user-1", "tenant-a"))

    def test_groups_become_scopes(self, manager):
        principal = manager.principal_from_claims({
            "sub": "user-1",
            "custom:tenant_id": "tenant-a",
            "cognito:groups": ["admin"],
        })
        assert principal.has_scope("admin")

    @pytest.mark.parametrize("tenant_id", ["acme.corp", "../tenant-b", "tenant a", "-leading-dash"])
    def test_malformed_tenant_claim_rejected(self, manager, tenant_id):
        with pytest.raises(HTTPException) as exc_info:
            manager.principal_from_claims({"sub": "user-1", "custom:tenant_id": tenant_id})
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_jwks_lookup_runs_off_the_event_loop(self, manager):
        manager.jwks_client = MagicMock()
        threads = []

        def authenticate(token):
            threads.append(threading.get_ident())
            return Principal(user_id="user-1", tenant_id="tenant-a")

        manager.authenticate = authenticate
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="provider-token")
        principal = await get_current_principal(credentials, manager)

        assert principal.tenant_id == "tenant-a"
        assert threads and threads[0] != threading.get_ident()


class TestInputSanitizer:

    def test_strips_control_characters(self):
        assert InputSanitizer().sanitize_prompt("  a\x00 cat\x07 ") == "a cat"

    def test_keeps_newlines(self):
        assert InputSanitizer().sanitize_prompt("line one\nline two") == "line one\nline two"

    @pytest.mark.parametrize("text", ["", "   ", "\x00\x01"])
    def test_rejects_empty(self, text):
        with pytest.raises(ValueError):
            InputSanitizer().sanitize_prompt(text)

    def test_rejects_over_long(self):
        with pytest.raises(ValueError):
            InputSanitizer().sanitize_prompt("x" * 11, max_length=10)


def test_security_headers():
    headers = SecurityHeaders.get_security_headers()
    assert headers["X-Content-Type-Options"] == "nosniff"
    assert "Strict-Transport-Security" in headers
