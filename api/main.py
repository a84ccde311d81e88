# api/main.py

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skill_system.errors import NodeNotFoundError

from .routers import auth, edges, nodes, realtime, trees
import api.database  # To access and re-assign api.database.engine


def create_app():
    # Initialize the database engine here, ensuring it uses the
    # environment variables set by pytest_configure for tests.
    DATABASE_URL = os.getenv("DATABASE_URL")
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL environment variable not set at app creation time.")

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Re-assign the engine in the database module so get_db uses it.
    api.database.engine = api.database.make_engine(DATABASE_URL)
    api.database.init_db()

    app = FastAPI(
        title="Skill Tree Sync API",
        description="Collaborative skill trees with prerequisite locking and realtime sync.",
        version="0.1.0",
    )

    @app.exception_handler(NodeNotFoundError)
    async def node_not_found_handler(request: Request, exc: NodeNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    app.include_router(auth.router)
    app.include_router(trees.router)
    app.include_router(nodes.router)
    app.include_router(edges.router)
    app.include_router(realtime.router)

    # Also expose the same routes under /api for the frontend
    api_prefix = "/api"
    app.include_router(auth.router, prefix=api_prefix)
    app.include_router(trees.router, prefix=api_prefix)
    app.include_router(nodes.router, prefix=api_prefix)
    app.include_router(edges.router, prefix=api_prefix)
    app.include_router(realtime.router, prefix=api_prefix)

    return app


# uvicorn api.main:app, or uvicorn api.main:create_app --factory
app = create_app()
