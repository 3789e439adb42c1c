"""Operator entry points."""
