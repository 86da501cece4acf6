"""Common utilities shared across services.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``events``: Redis pub/sub job lifecycle events.
- ``auth``: JWT/OIDC verification and tenant-scoped principals.
- ``tracing``: OpenTelemetry setup.

Import pattern:
- from libs.common.config import GatewayConfig
- from libs.common.logging import configure_logging
"""
