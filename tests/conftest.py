# conftest.py

import os
import pytest
from fastapi.testclient import TestClient

# --- Environment Configuration ---

def pytest_configure(config):
    """
    Forcefully sets the correct environment variables for the entire test session.
    This overrides any variables from the CI runner, ensuring consistency.
    """
    os.environ["TESTING_MODE"] = "True"
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    os.environ["SECRET_KEY"] = "testsecretkey"
    os.environ["ACCESS_TOKEN_EXPIRE_MINUTES"] = "30"
    os.environ["LOG_LEVEL"] = "WARNING"


# --- Fixtures ---

@pytest.fixture
def clean_db_client():
    """
    Provides a TestClient instance backed by a fresh in-memory database.
    create_app() swaps in a new engine, so nothing leaks between tests.
    """
    from api.main import create_app

    app_instance = create_app()
    with TestClient(app_instance) as client:
        yield client


@pytest.fixture
def open_tree(clean_db_client):
    """An open (password-less) tree seeded with the default template."""
    response = clean_db_client.post("/trees", json={"title": "Web basics"})
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def graph_factory():
    """Builds a SkillGraph from (id, unlocked) pairs and (source, target) pairs."""
    from skill_system.models import SkillGraph, SkillNode, SkillEdge

    def build(nodes, edges=()):
        return SkillGraph.from_rows(
            [SkillNode(id=node_id, name=node_id.upper(), unlocked=unlocked) for node_id, unlocked in nodes],
            [SkillEdge(id=f"{source}-{target}", source=source, target=target) for source, target in edges],
        )

    return build
