"""
DocStore SDK Test Suite.

This package contains:
- unit/: Unit tests (pure data types, codecs, cache backends)
- integration/: Integration tests (client against the in-process FakeDocStore)
"""
