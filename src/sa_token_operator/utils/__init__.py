"""Utility functions for the ServiceAccount Token Operator."""
