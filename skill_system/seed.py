from typing import List, Tuple

from .models import Position, SkillEdge, SkillNode, generate_id

# seed.py

# The default template every new or reset tree starts from.
# Template ids are placeholders; build_seed_graph() gives each node a fresh id
# and rewires the edges to match.

TEMPLATE_NODES = [
    {
        "id": "1",
        "name": "HTML",
        "description": "HyperText Markup Language",
        "cost": 1,
        "level": 1,
        "unlocked": True,
        "position": {"x": 40, "y": 40},
    },
    {
        "id": "2",
        "name": "CSS",
        "description": "Cascading Style Sheets",
        "unlocked": False,
        "position": {"x": 280, "y": 120},
    },
]

TEMPLATE_EDGES = [{"id": "e1-2", "source": "1", "target": "2", "animated": True}]


def build_seed_graph(template_nodes=None, template_edges=None) -> Tuple[List[SkillNode], List[SkillEdge]]:
    """Copies a template with freshly generated node and edge ids."""
    template_nodes = TEMPLATE_NODES if template_nodes is None else template_nodes
    template_edges = TEMPLATE_EDGES if template_edges is None else template_edges

    id_map = {}
    nodes = []
    for item in template_nodes:
        new_id = generate_id()
        id_map[item["id"]] = new_id
        nodes.append(
            SkillNode(
                id=new_id,
                name=item["name"],
                description=item.get("description"),
                cost=item.get("cost"),
                level=item.get("level"),
                unlocked=item.get("unlocked", False),
                position=Position.coerce(item.get("position", {"x": 0, "y": 0})),
            )
        )

    edges = []
    for item in template_edges:
        # Edges into nodes the template does not define are dropped
        if item["source"] not in id_map or item["target"] not in id_map:
            continue
        source = id_map[item["source"]]
        target = id_map[item["target"]]
        edges.append(
            SkillEdge(
                id=f"e{source}-{target}",
                source=source,
                target=target,
                animated=item.get("animated", True),
            )
        )
    return nodes, edges
