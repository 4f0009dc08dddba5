"""
Land Cover Change Detection
===========================

Tile-parallel pipeline that builds cloud-free Landsat composites for two
time periods, classifies them with a supervised classifier and reports
per-class area change between the periods.
"""

__version__ = "1.0.0"
