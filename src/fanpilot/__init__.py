"""
fanpilot

Temperature driven fan control daemon with per-fan calibration.
"""

__version__ = "0.1.0"
