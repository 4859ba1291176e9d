"""
Core modules for Tokenwise.

This package contains pricing resolution, token estimation, and the
streaming usage accumulator.
"""
