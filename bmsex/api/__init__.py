from .routes import create_app, router

__all__ = ['create_app', 'router']
