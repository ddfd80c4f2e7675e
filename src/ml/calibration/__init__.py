"""Probability metrics and recalibration."""

from .calibration import (
    CalibrationMetrics,
    LogitLinearCalibrator,
    accuracy,
    auc_roc,
    brier,
    calculate_calibration_metrics,
    calibration_bins,
    hash_calibration_meta,
    log_loss,
)

__all__ = [
    "CalibrationMetrics",
    "LogitLinearCalibrator",
    "accuracy",
    "auc_roc",
    "brier",
    "calculate_calibration_metrics",
    "calibration_bins",
    "hash_calibration_meta",
    "log_loss",
]
