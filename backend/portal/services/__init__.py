"""Domain services for request intake, approval, routing, and notification."""
