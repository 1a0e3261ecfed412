"""Lattice agent: runs control-plane assigned workloads as local containers."""

__version__ = "0.1.0"
