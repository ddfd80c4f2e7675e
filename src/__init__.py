"""League win forecaster."""
