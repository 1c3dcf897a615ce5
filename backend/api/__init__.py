"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the planner agent backend:
run management, the sub-agent endpoints and the event stream.
"""

from api.agent_routes import router as agent_router
from api.routes import router
from api.websocket import websocket_router

__all__ = ["agent_router", "router", "websocket_router"]
