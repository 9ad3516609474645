"""Test-harness tooling for running integration tests against a local sandbox."""

__version__ = "0.1.0"
