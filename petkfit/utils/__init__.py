"""
Scan timing, weighting and file IO helpers.
"""
