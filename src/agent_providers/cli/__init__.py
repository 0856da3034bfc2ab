from .main import app, app_main, main, version_callback


__all__ = ["app", "app_main", "main", "version_callback"]
