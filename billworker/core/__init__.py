"""
Core worker: run model, error taxonomy and the top-level run loop.
"""
