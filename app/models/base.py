"""Shared table metadata."""

from sqlalchemy import MetaData

# Metadata for all tables of the queue engine
metadata = MetaData()
