"""Shared configuration, models and errors."""
