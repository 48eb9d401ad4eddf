"""Combo Edge: calibration and combinatorial portfolio engine."""

__version__ = "0.4.0"
