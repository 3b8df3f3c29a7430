"""
API routes module.
"""
from api.routes.hls import router as hls_router

__all__ = ["hls_router"]
