"""
CareCircle Test Suite
=====================

This package contains all tests for the CareCircle medication scheduling,
adherence and family sharing backend.

Test Structure:
- test_services/: Service layer tests against an in-memory database
- test_actions/: Missed dose detector and monitor tests
- test_tools/: Invitation email delivery tests
- test_api/: API endpoint tests for FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_api/

    # Run only marked tests
    pytest -m "api"
    pytest -m "unit"
"""
