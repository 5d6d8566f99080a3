"""
Propagation module for access-sync - grant events to access-sets.

This module handles:
- Category membership resolution (which experiences a category grant reaches)
- Reachability evaluation (whether any other grant still reaches an experience)
- Grant lifecycle handlers (created, updated, deleted)
- The stream consumer that drives the handlers

Invariants:
    - Handlers are idempotent under redelivery
    - Removal happens only when no live grant still reaches the experience
    - Self-grants never touch an access-set

How to change safely:
    - Keep resolver, evaluator and reconciliation in step when adding scopes
    - Verify idempotency with duplicate event injection tests
"""

from .consumer import ChangeKind, GrantChangeEvent, GrantEventConsumer, publish_grant_change
from .handlers import GrantEventHandlers, HandlerResult
from .reachability import ReachabilityEvaluator
from .resolver import CategoryMembershipResolver

__all__ = [
    "CategoryMembershipResolver",
    "ReachabilityEvaluator",
    "GrantEventHandlers",
    "HandlerResult",
    "ChangeKind",
    "GrantChangeEvent",
    "GrantEventConsumer",
    "publish_grant_change",
]
