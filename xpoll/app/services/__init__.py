"""Services package for the poll service."""
