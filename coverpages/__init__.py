"""
coverpages: book cover in, first two content pages out
"""
__version__ = "0.3.0"
