"""
Tests package - Comprehensive test suite for the Keycloak operator.

Contains:
- unit/: Unit tests for individual components
- integration/: End-to-end integration tests
- fixtures/: Test data and mock resources
"""
