"""Bucketed duration-anomaly tracking for state-change event streams."""
