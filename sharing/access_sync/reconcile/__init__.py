"""
Reconciliation module for access-sync.

Full recomputation of access-sets from the normalized grant table, used
for drift repair. Exposed to operators through the HTTP maintenance
endpoint and the access-sync-reconcile CLI.

Invariants:
    - Live runs require explicit confirmation
    - Runs are resumable from the returned cursor
"""

from .job import ReconcileOptions, ReconcileResult, ReconciliationJob

__all__ = ["ReconciliationJob", "ReconcileOptions", "ReconcileResult"]
