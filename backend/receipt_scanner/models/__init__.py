"""Database tables, Pydantic schemas and enumerations."""
