"""
Pattern projector: calibrate a projector onto a physical surface and
project true-scale patterns, grids and measurements.
"""

__version__ = "0.1.0"
