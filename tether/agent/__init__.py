"""Reasoning loop, tools, checkpoints and multi-agent coordination."""
