"""
Settings loading and validation.
"""
