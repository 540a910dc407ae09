"""
Procure-to-pay transaction workflow engine.
"""

__version__ = "1.0.0"
