"""
SHARR test suite.

This package contains all tests for the SHARR application, organized into:
    - unit/: Unit tests with mocked AWS clients and HTTP endpoints

Test Organization:
    - tests/conftest.py: Shared fixtures (settings, findings, mocked clients)
    - tests/unit/test_*.py: Unit tests for individual modules
"""
