"""Secure Chat Relay backend."""
