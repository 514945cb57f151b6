"""
Toolsmith: an agent that learns what things are good for

An adaptive decision-and-learning loop for an agent discovering
tools in a 2D world of objects with continuous material properties.
It predicts outcomes online, explores by curiosity, and settles into
manufacture once the world stops surprising it.
"""

__version__ = "0.1.0"
