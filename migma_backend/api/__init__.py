from migma_backend.api.container import Container, build_container, wire
from migma_backend.api.server import create_app

__all__ = ["Container", "build_container", "create_app", "wire"]
