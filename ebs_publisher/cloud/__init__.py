"""EC2 API, instance metadata and kernel lookup data."""
