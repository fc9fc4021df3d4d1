"""Credential verification and token lifecycle service."""
