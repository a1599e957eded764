"""Data Manager: single-table CRUD API over an embedded SQLite store."""

__version__ = "1.0.0"
