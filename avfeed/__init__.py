"""
avfeed - all versions and deletes change feed consumer for Azure Cosmos DB.
"""

__version__ = "0.1.0"
