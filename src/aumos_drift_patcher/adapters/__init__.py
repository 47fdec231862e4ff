"""Adapters: concrete infrastructure implementations.

Bridges the domain core to PostgreSQL and in-process stores (repositories),
Kafka (event publisher), scipy (statistical tests), the filesystem (artifact
loading and patch export) and inference log sources.
"""
