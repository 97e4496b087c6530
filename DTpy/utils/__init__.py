"""
Utils module for DTpy.
"""

from .weights import bindings_for, read_npz, save_npz

__all__ = ["read_npz", "save_npz", "bindings_for"]
