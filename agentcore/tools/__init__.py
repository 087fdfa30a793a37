"""Tools used by pipeline nodes: live-data detection, scraping, retrieval."""
