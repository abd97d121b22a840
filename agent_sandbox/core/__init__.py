"""Shared types, constants and exceptions."""
