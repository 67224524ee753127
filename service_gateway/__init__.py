"""Gateway service: application package and default topology."""
