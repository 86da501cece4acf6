"""Integration tests against real Redis and PostgreSQL.

Marked ``integration`` and skipped when the services are not reachable.
"""
