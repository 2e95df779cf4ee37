"""
main.py

Entry point for the Construction Schedule & Resource Allocation Engine API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.  Host, port, reload and log level come from config.py
(SCHEDULE_ENGINE_* environment variables).

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/resources                            - register a crew
2.  POST /api/v1/projects                             - create a project
3.  PUT  /api/v1/projects/{id}/schedule               - save its phase list
4.  GET  /api/v1/projects/{id}/schedule/state         - current phase and progress
5.  POST /api/v1/projects/{id}/schedule/shift         - push phases out, with cascade
6.  GET  /api/v1/projects/{id}/audit                  - see what moved and why
7.  GET  /api/v1/projects/{id}/milestones             - draw due dates after the shift
8.  GET  /api/v1/resources/utilization                - weekly crew heatmap
"""

import logging

import uvicorn

import config
from api import app, get_uow
from infrastructure import InMemoryUnitOfWork

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.RELOAD,
        log_level=config.LOG_LEVEL.lower(),
    )
