"""Calibration, stacking and hyperparameter search."""
