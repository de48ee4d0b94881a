"""Utilities for DeployPilot."""
