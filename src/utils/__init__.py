"""Shared helpers: validation, name normalization, lookup rate limiting."""
