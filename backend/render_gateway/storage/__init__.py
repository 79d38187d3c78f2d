"""Persistent storage for uploaded media."""
