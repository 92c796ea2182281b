"""Test package for AwaitGuard static analysis tool.

This package contains unit and integration tests for the AwaitGuard
non-atomic update detector.
"""

__all__ = [
    "test_analysis",
    "test_analyzer",
    "test_atomic_updates",
    "test_cfg",
    "test_integration",
    "test_scope",
    "test_utils",
]
