"""
Mind Measure Test Suite
=======================

Test organization:
- tests/unit/             - Shared library tests (local backend, no network)
- tests/services/app_api/ - App API routes and services
- tests/services/admin/   - Admin routes and security automation

Run tests:
    pytest                          # All tests
    pytest tests/unit               # Unit tests only
    pytest tests/services/admin     # One service
"""
