"""Request/response schemas for the portal API."""
