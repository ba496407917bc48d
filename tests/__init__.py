"""
Editor AI Test Suite
====================

Run all tests:
    pytest tests/ -v

Run with coverage:
    pytest tests/ --cov=editor_ai --cov-report=html

Security note: These tests use mocked transports and SDK clients and
do not require real API keys or running model servers.
"""
