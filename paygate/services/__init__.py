"""
Chain access, log decoding and persistence services.
"""
