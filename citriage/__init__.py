"""citriage: CI failure triage and report synthesis for coding agents."""

__version__ = "0.1.0"
