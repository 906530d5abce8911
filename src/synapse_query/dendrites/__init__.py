"""
Dendrites - Bidirectional pagination
Layer 3: Data Ingestion
"""
