"""Database interface and repository abstractions.

This package holds the feature and history models and the repositories
persisting them: ``PostgresLayerRepository`` in production and
``InMemoryLayerRepository`` for tests and local development, both
implementing ``LayerRepositoryProtocol``.

Example:
    Build a repository from settings:
        >>> from layer_store.db import database
        >>> repo = database.get_layer_repository(settings)
"""
