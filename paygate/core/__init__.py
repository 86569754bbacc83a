"""
Core configuration, logging, error and database plumbing.
"""
