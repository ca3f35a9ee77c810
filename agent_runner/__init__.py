"""Agent session runner for the OpenCode CLI."""
