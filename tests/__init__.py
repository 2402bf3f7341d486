"""
Coach Client Tests
==================

This package contains unit tests for the coach client components.

Test Structure:
- test_events.py: Tests for the typed event dispatcher
- test_backoff.py / test_shutdown.py: Tests for retry and cancellation primitives
- test_metrics.py / test_pipeline.py / test_mic.py: Tests for audio capture
- test_rate_limit.py / test_schemas.py / test_connection.py: Tests for the streaming session
- test_coach.py: Tests for the orchestration facade
- test_config.py: Tests for configuration management
- conftest.py / fakes.py: Shared fixtures and test doubles

To run tests:
    pytest tests/

To run specific test file:
    pytest tests/test_connection.py
"""
