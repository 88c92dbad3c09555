"""Pytest configuration for all tests."""

import os

# Settings are read from the environment; give tests a token so that
# get_settings() succeeds unless a test overrides it.
os.environ.setdefault("DISPATCH_LINEAR_ACCESS_TOKEN", "lin_test_token")
