"""
Connectors to the source database and checkpoint backends.
"""
