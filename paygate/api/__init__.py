"""
HTTP status and control surface for the indexer fleet.
"""
