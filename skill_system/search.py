from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List


@dataclass(frozen=True)
class SearchInfo:
    query: str = ""
    matched_node_ids: FrozenSet[str] = field(default_factory=frozenset)
    path_node_ids: FrozenSet[str] = field(default_factory=frozenset)
    path_edge_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def active(self) -> bool:
        return bool(self.query)


def compute_search_info(nodes: Iterable, edges: Iterable, raw_query: str) -> SearchInfo:
    """
    Finds the nodes whose name or description contains the query, then walks
    backwards from them to collect every prerequisite node and edge.
    Recomputed from scratch for every query.
    """
    query = (raw_query or "").strip().lower()
    if not query:
        return SearchInfo(query=query)

    matched = set()
    for node in nodes:
        haystack = f"{node.name} {node.description or ''}".lower()
        if query in haystack:
            matched.add(node.id)

    path_nodes = set(matched)
    path_edges = set()

    if matched:
        incoming: Dict[str, List] = {}
        for edge in edges:
            incoming.setdefault(edge.target, []).append(edge)

        stack = list(matched)
        while stack:
            curr = stack.pop()
            for edge in incoming.get(curr, []):
                path_edges.add(edge.id)
                if edge.source not in path_nodes:
                    path_nodes.add(edge.source)
                    stack.append(edge.source)

    return SearchInfo(
        query=query,
        matched_node_ids=frozenset(matched),
        path_node_ids=frozenset(path_nodes),
        path_edge_ids=frozenset(path_edges),
    )


def highlight_states(nodes: Iterable, info: SearchInfo) -> Dict[str, Dict[str, bool]]:
    """
    Per-node highlight flags. Nothing is dimmed unless a search is active
    and found at least one node.
    """
    flags = {}
    dim_others = info.active and bool(info.path_node_ids)
    for node in nodes:
        match = node.id in info.matched_node_ids
        on_path = node.id in info.path_node_ids
        flags[node.id] = {
            "search_match": match,
            "search_path": on_path,
            "search_dimmed": dim_others and not on_path,
        }
    return flags


def edge_highlights(edges: Iterable, info: SearchInfo) -> Dict[str, bool]:
    """Maps edge id -> True when the edge lies on a highlighted path."""
    if not info.active or not info.path_edge_ids:
        return {}
    return {edge.id: edge.id in info.path_edge_ids for edge in edges}
