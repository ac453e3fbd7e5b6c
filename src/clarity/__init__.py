"""Clarity request pipeline.

Turns GitHub issues and Slack mentions into pull requests by running an
AI coding agent against an ephemeral clone of the target repository.
"""

__version__ = "1.0.0"
