"""Win-probability calibration: dataset collection, Platt scaling and evaluation."""
