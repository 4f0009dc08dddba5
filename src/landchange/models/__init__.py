"""Classifier capabilities and the classification stage."""
