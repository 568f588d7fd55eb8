"""Predict, from a visitor's first session, whether they purchase on a return visit."""

__version__ = "0.1.0"
