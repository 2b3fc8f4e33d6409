"""Packaged SQL migration scripts."""
