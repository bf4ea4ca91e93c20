"""Service integrations: AWS and in-memory stand-ins."""
