# API Routers - LookEscolar access API

from app.routers import access, health

__all__ = ["access", "health"]
