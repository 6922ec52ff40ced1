"""Entry point for ``python -m peerdrop``."""
from .client import app

if __name__ == "__main__":
    app()
