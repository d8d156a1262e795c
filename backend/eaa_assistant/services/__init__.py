"""Request handling services."""
