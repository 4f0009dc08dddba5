"""Tiling, accuracy metrics, change accounting and export helpers."""
