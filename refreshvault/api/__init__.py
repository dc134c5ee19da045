# refreshvault API
from refreshvault.api.router import api_router

__all__ = ["api_router"]
