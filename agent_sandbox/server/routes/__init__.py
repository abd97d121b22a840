"""API route modules."""
from agent_sandbox.server.routes.health import router as health_router
from agent_sandbox.server.routes.prompts import router as prompts_router
from agent_sandbox.server.routes.servers import router as servers_router
from agent_sandbox.server.routes.tasks import router as tasks_router


__all__ = ["health_router", "prompts_router", "servers_router", "tasks_router"]
