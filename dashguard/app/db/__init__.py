"""Database package: ORM models, async engine and CRUD helpers."""
