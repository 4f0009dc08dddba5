"""Raster handling, sensor normalization, compositing and sampling."""
