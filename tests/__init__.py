"""
sessioncache Test Suite
=======================

Test Organization
-----------------
- tests/unit/          : Fast unit tests over the in-memory store
- tests/integration/   : Integration tests with testcontainers (real Redis)

Testing Philosophy
------------------
- Unit tests: fast, isolated, drive the cache through its public API
- Integration tests: slower, exercise the Redis store against a real server
- Use pytest markers to categorize and selectively run tests
- Follow AAA pattern: Arrange, Act, Assert
"""
