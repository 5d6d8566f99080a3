"""
Operator tools for access-sync.

- reconcile_cli: rebuild access-sets from a local SQLite store
"""
