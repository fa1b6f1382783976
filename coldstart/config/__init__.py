from coldstart.config.settings import Settings, load_routes_file, settings

__all__ = ["Settings", "load_routes_file", "settings"]
