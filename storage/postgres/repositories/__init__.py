"""Repositories per record family."""
