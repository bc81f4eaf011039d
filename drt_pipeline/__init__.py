"""Dentato-rubro-thalamic tract segmentation pipeline for DBS target selection."""

__version__ = "0.2.0"
