"""inventory_tap — passive game inventory extraction from network traffic."""

__version__ = "0.1.0"
