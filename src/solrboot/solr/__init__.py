"""Administrative HTTP API access for Solr."""
from __future__ import annotations

from .client import EngineProbe, RetryPolicy, SolrAdminClient

__all__ = ["EngineProbe", "RetryPolicy", "SolrAdminClient"]
