"""Clients for external platform APIs."""
