"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from src.api.routes import conversations, credentials, generations, models, rules, usage

__all__ = [
    "conversations",
    "credentials",
    "generations",
    "models",
    "rules",
    "usage",
]
