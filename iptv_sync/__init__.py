"""IPTV playlist ingestion and synchronization service."""
