"""Custom table definitions, schema translation and record storage."""
