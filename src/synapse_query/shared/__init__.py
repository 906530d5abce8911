"""
Shared - Configuration, logging, errors, schemas and metrics
used by every layer of Synapse Query.
"""
