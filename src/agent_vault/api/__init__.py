# API Module - FastAPI application for the vault daemon

from .main import create_app, start_api_server

__all__ = ["create_app", "start_api_server"]
