"""
Noverna Core Test Suite
=======================

Test Organization
-----------------
- tests/unit/          : Fast unit tests against in-memory adapters
- tests/integration/   : Integration tests with testcontainers (real PostgreSQL/Redis)

Testing Philosophy
------------------
- Unit tests: Fast, isolated, cover storage and migration semantics
- Integration tests: Slower, cover real SQL and Redis behaviour
- Use pytest markers to categorize and selectively run tests
- Follow AAA pattern: Arrange, Act, Assert
"""
