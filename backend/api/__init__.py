from .memory import get_memory_manager
from .memory import router as memory_router

__all__ = ["get_memory_manager", "memory_router"]
