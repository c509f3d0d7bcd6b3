"""HTTP 传输层（FastAPI）。"""
from .app import create_app

__all__ = ["create_app"]
