"""Credential storage, token cipher, refresh sweep and account switching."""
