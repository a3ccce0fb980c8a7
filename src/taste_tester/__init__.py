"""taste-tester -- test configuration changes on real hosts against a local chef server."""

__version__ = "0.1.0"
