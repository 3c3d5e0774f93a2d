from app.routers import assets, health, internal

__all__ = [
    "assets",
    "health",
    "internal",
]
