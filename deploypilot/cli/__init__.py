"""DeployPilot command line interface."""
