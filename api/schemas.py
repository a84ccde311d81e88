# api/schemas.py

from typing import List, Optional

from pydantic import BaseModel, Field


class PositionModel(BaseModel):
    x: float = 0
    y: float = 0


# --- Trees ---

class TreeCreate(BaseModel):
    title: Optional[str] = None
    password: Optional[str] = None
    seed: bool = True


class TreeUpdate(BaseModel):
    title: str


class TreeMeta(BaseModel):
    id: str
    title: str
    password_protected: bool


class TreeCreated(TreeMeta):
    access_token: Optional[str] = None


class TreeAuth(BaseModel):
    password: str


class PasswordUpdate(BaseModel):
    new_password: str = Field(min_length=1)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# --- Nodes ---

class NodeCreate(BaseModel):
    name: str = ""
    description: Optional[str] = None
    cost: Optional[float] = None
    level: Optional[float] = None
    position: PositionModel = Field(default_factory=PositionModel)
    connect_from: Optional[str] = None


class NodeUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    level: Optional[float] = None
    position: Optional[PositionModel] = None


class Node(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    cost: Optional[float] = None
    level: Optional[float] = None
    unlocked: bool = False
    position: PositionModel


class NodeTransition(BaseModel):
    """Result of an activate/reset request; `changed` is False for a silent no-op."""
    changed: bool
    node: Node


# --- Edges ---

class EdgeCreate(BaseModel):
    source: str
    target: str
    id: Optional[str] = None
    animated: bool = True


class Edge(BaseModel):
    id: str
    source: str
    target: str
    animated: bool = True


# --- Graph ---

class Graph(BaseModel):
    nodes: List[Node]
    edges: List[Edge]


class Selection(BaseModel):
    node_ids: List[str] = Field(default_factory=list)
    edge_ids: List[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    query: str
    matched_node_ids: List[str]
    path_node_ids: List[str]
    path_edge_ids: List[str]


class LearningPath(BaseModel):
    node_id: str
    path: List[str]
