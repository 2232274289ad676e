"""Domain services: credentials, registry, ports, lifecycle, reconciliation."""
