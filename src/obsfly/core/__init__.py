"""Core domain: models, ports and the query and rollup engines."""
