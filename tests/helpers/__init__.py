"""
llmstash - Test Helpers

Provides utilities for testing:
- Fake registry and HTTP session
- Fixture builders
- Assertions
"""
