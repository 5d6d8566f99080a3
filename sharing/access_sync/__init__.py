"""
access-sync - denormalized access-set maintenance for shared experiences.

Users own experiences organized into categories (primary, secondary and
color categories) and share them by creating grants. Read paths need a
single-predicate query ("every experience visible to user U"), so each
experience carries a denormalized access-set that this package keeps
consistent with the normalized grant table.

Architecture:
    ┌──────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │ Grant Store  │────▶│  Grant change    │────▶│ GrantEvent       │
    │ (share docs) │     │  event stream    │     │ Consumer         │
    └──────────────┘     └──────────────────┘     └────────┬─────────┘
                                                           │
                                 ┌─────────────────────────┼─────────────┐
                                 ▼                         ▼             │
                        ┌─────────────────┐      ┌──────────────────┐    │
                        │ Membership      │      │ Reachability     │    │
                        │ Resolver        │      │ Evaluator        │    │
                        └────────┬────────┘      └────────┬─────────┘    │
                                 └───────────┬────────────┘              │
                                             ▼                           ▼
                                   ┌───────────────────┐      ┌──────────────────┐
                                   │ Item Store        │◀─────│ Reconciliation   │
                                   │ (access_set)      │      │ Job (operator)   │
                                   └───────────────────┘      └──────────────────┘

Invariants:
    - At quiescence, access_set(e) equals the grantees of every live grant
      that reaches e (direct, plain category or color category)
    - The owner of an experience is never in its access_set
    - Access-set mutations are set-union, set-remove or full replace only
    - The reconciliation job can rebuild every access_set from grants alone

How to change safely:
    - New grant scopes must be added to the resolver, the evaluator and
      the reconciliation job together
    - Test every handler change with duplicated and reordered events
    - Run the reconciliation job in dry-run mode before any live rebuild
"""

from ._version import __version__

__all__ = ["__version__"]
