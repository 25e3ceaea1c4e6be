from .health import build_health_router, registry_lifespan

__all__ = ['build_health_router', 'registry_lifespan']
