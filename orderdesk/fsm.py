"""Allowed status transitions for lifecycle models.

Usage:
    ORDER_FSM = TransitionValidator({
        'draft': {'pending', 'cancelled'},
        'pending': {'completed', 'cancelled'},
        'completed': set(),
        'cancelled': set(),
    })
    ORDER_FSM.assert_can_transition(order.status, target)

Raises InvalidTransition if the edge is missing.
"""
from typing import Dict, Set

from .errors import InvalidTransition


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]]):
        self.graph = graph

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.graph.get(current, set())

    def assert_can_transition(self, current: str, target: str):
        if not self.can_transition(current, target):
            raise InvalidTransition(f"Invalid status transition {current} -> {target}")
        return True


__all__ = ['TransitionValidator']
