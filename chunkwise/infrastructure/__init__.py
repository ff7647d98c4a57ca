"""
Infrastructure implementations of the core upload interfaces.
"""
