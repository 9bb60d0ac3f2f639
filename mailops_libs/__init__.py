"""Mail operations libraries."""
