"""Authentication, request context and permission checks."""
