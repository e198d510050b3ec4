"""Telegram transport: commands, live result message and formatting."""
