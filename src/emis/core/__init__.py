"""Shared kernel: configuration, enums, errors, and id factories."""
