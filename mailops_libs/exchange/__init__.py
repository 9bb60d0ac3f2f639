"""Exchange related libraries."""
