from collections import deque
from typing import Dict, Iterable, List, Optional

# cycle_guard.py

# The prerequisite graph must stay acyclic. Every locally proposed edge is
# checked here before it is accepted.


def build_adjacency(edges: Iterable) -> Dict[str, List[str]]:
    """
    Builds an adjacency list: source id -> list of target ids.
    Edges with a missing end are skipped.
    """
    adjacency: Dict[str, List[str]] = {}
    for edge in edges:
        if not edge.source or not edge.target:
            continue
        adjacency.setdefault(edge.source, []).append(edge.target)
    return adjacency


def would_create_cycle(edges: Iterable, source: Optional[str], target: Optional[str]) -> bool:
    """
    Decides whether adding `source -> target` to `edges` closes a loop.

    Runs an iterative DFS forward from `target`; if `source` is reachable the
    new edge would point back into its own ancestry.
    """
    if not source or not target:
        return False
    # A self-loop is the smallest possible cycle
    if source == target:
        return True

    adjacency = build_adjacency(edges)
    visited = set()
    stack = [target]

    while stack:
        curr = stack.pop()
        if curr in visited:
            continue
        if curr == source:
            return True
        visited.add(curr)
        # .get() so isolated ids simply have no successors
        stack.extend(adjacency.get(curr, []))

    return False


def find_cycle(edges: Iterable) -> Optional[List[str]]:
    """
    Audits a whole edge set with Kahn's algorithm.
    Returns the ids left over after peeling every zero in-degree node (all of
    them sit on or behind a cycle), or None when the graph is acyclic.
    """
    edges = list(edges)
    adjacency = build_adjacency(edges)
    in_degree: Dict[str, int] = {}
    for source, targets in adjacency.items():
        in_degree.setdefault(source, 0)
        for target in targets:
            in_degree[target] = in_degree.get(target, 0) + 1

    q = deque(node for node, degree in in_degree.items() if degree == 0)
    seen = 0
    while q:
        curr = q.popleft()
        seen += 1
        for nxt in adjacency.get(curr, []):
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                q.append(nxt)

    if seen == len(in_degree):
        return None
    return sorted(node for node, degree in in_degree.items() if degree > 0)
