"""Shared receiver-wide constants."""
SERVICE_NAME = "receiver"
