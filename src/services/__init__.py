"""Service layer for Kepler Chat.

Model catalog, credential storage and validation, generation
orchestration and the background tasks derived from a finished turn.
Modules are imported directly (``from src.services.model_catalog
import ModelCatalog``) to keep provider adapters and services free of
import cycles.
"""
