"""Prompt analysis, quality scoring and user-facing message composition."""
