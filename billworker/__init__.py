"""
Light Invoice Worker - logs into the Light Agência Virtual portal and
downloads bill PDFs.
"""

__version__ = "1.0.0"
