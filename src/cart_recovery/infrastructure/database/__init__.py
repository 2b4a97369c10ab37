"""Database models, storefront mapping and connection management."""
