"""
matchround
Lifecycle engine for recurring, time-boxed matching rounds.
"""
__version__ = "0.1.0"
