"""
Test support utilities for dpmigrate tests.

Helpers that are not pytest fixtures but are shared across test files
(fake process handles, scripted work functions, recording report sinks).
"""
