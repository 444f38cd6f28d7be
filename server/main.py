"""
FastAPI Main Application
========================

Host server for agent containers: Docker health, per-session agent
control and the MCP bridge endpoint that containers call back into.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import agent, mcp_bridge
from .services.container_manager import get_container_manager
from .services.docker_client import reset_docker_client
from .services.worktree_manager import cleanup_all_stale_worktrees

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup reconciliation and shutdown cleanup."""
    manager = get_container_manager()

    try:
        removed = await manager.reconcile_orphans()
        if removed:
            logger.info(f"Removed {removed} orphaned agent container(s)")
    except Exception as e:
        logger.warning(f"Orphan container cleanup failed: {e}")

    try:
        cleaned = await cleanup_all_stale_worktrees()
        for project_id, sessions in cleaned.items():
            logger.info(f"Removed {len(sessions)} stale worktree(s) in project {project_id}")
    except Exception as e:
        logger.warning(f"Stale worktree cleanup failed: {e}")

    yield

    await manager.despawn_all()
    reset_docker_client()


app = FastAPI(
    title="AgentPod",
    description="Isolated per-session agent containers",
    version="0.1.0",
    lifespan=lifespan,
)


def get_cors_origins() -> list[str]:
    """CORS_ORIGINS: comma-separated list, or "*"."""
    value = os.getenv("CORS_ORIGINS", "").strip()
    if value == "*":
        return ["*"]
    if value:
        return [origin.strip() for origin in value.split(",") if origin.strip()]
    return ["http://localhost:5173", "http://127.0.0.1:5173"]


cors_origins = get_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agent.router)
app.include_router(mcp_bridge.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}
