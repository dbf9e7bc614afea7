"""
Sinalite catalog ingestion for the storefront database.

Provides the batch pipeline that:
- Authenticates against the Sinalite API
- Discovers the product catalog and fetches per-store detail payloads
- Classifies and upserts regular and roll-label products into PostgreSQL
"""
