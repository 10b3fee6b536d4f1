"""Dependency injection utilities for FastAPI"""

from fastapi import HTTPException, Request

from coordinator.services.coordinator import QueueCoordinator


def get_coordinator(request: Request) -> QueueCoordinator:
    """Coordinator built during app startup."""
    coordinator: QueueCoordinator | None = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Queue coordinator not ready")
    return coordinator
