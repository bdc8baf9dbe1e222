"""Concierge: voice and text front end for a retrieval-grounded talking avatar."""

__version__ = "0.1.0"
