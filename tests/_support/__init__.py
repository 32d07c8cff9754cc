"""Shared builders and stub functions for kanopy tests."""
